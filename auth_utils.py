from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta
from fastapi import HTTPException, Depends
from fastapi.security import OAuth2PasswordBearer
from config import SECRET_KEY, TOKEN_EXPIRE_MINUTES

# Password hashing
pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
    pbkdf2_sha256__rounds=30000
)

ALGORITHM = "HS256"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

def hash_password(password: str) -> str:
    # Truncate password to 72 characters
    truncated_password = password[:72]
    return pwd_context.hash(truncated_password)

def verify_password(password: str, hashed: str) -> bool:
    # Truncate password to 72 characters to match hashing behavior
    truncated_password = password[:72]
    return pwd_context.verify(truncated_password, hashed)

def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + timedelta(minutes=TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def decode_user_id(token: str) -> int | None:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("user_id")

def get_current_user_id(token: str = Depends(oauth2_scheme)) -> int:
    user_id = decode_user_id(token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id
