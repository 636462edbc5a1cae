from pydantic import BaseModel, Field

class LoginRequest(BaseModel):
    email: str
    password: str

class SignupRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)

class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    message: str

class SignupResponse(BaseModel):
    user_id: int
    message: str
