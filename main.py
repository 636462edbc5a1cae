import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

import account_service
import bookkeeping_service
import calculations
import crud
from auth_schemas import LoginRequest, LoginResponse, SignupRequest, SignupResponse
from auth_utils import create_access_token, decode_user_id, get_current_user_id
from config import DATABASE_URL, LOG_LEVEL
from database import Database, get_db
from exceptions import ConflictError, JournalError, NotFoundError, ValidationError
from export_service import export_trades
from models import TradingSession
from schemas import (
    AmountResponse,
    ClearTradesResponse,
    LanguageRequest,
    NextTradeAmountRequest,
    NotificationResponse,
    PositionSizeRequest,
    PositionSizeResponse,
    ProfitLossRequest,
    SessionCreateRequest,
    SessionPatch,
    SessionResponse,
    SessionStatsResponse,
    SettingsPatch,
    SettingsResponse,
    SettleRequest,
    SwitchSessionRequest,
    TradeCreateRequest,
    TradePatch,
    TradeResponse,
    TradeReturnRequest,
)
from websocket_service import manager

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
}


def create_app(database_url: str = DATABASE_URL) -> FastAPI:
    app = FastAPI(title="Trade Journal Backend")
    app.state.database = Database(database_url)

    @app.on_event("startup")
    def startup_event():
        app.state.database.open()
        app.state.database.create_all()

    @app.on_event("shutdown")
    def shutdown_event():
        app.state.database.close()

    @app.exception_handler(JournalError)
    async def journal_error_handler(request: Request, exc: JournalError):
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)), 400
        )
        if status_code != 404:
            logger.info(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    register_routes(app)
    return app


def _owned_session(db: Session, session_id: int, user_id: int) -> TradingSession:
    session = crud.get_session(db, session_id, user_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return session


def _owned_trade(db: Session, trade_id: int, user_id: int):
    trade = crud.get_trade(db, trade_id, user_id)
    if trade is None:
        raise NotFoundError(f"Trade {trade_id} not found")
    return trade


def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    # Authentication endpoints
    @app.post("/auth/signup", response_model=SignupResponse)
    def signup(request: SignupRequest, db: Session = Depends(get_db)):
        user = account_service.register_user(db, request.email, request.password)
        return SignupResponse(user_id=user.id, message="User created successfully")

    @app.post("/auth/login", response_model=LoginResponse)
    def login(request: LoginRequest, db: Session = Depends(get_db)):
        user = account_service.authenticate(db, request.email, request.password)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid credentials")

        token = create_access_token({"user_id": user.id})
        return LoginResponse(access_token=token, user_id=user.id, message="Login successful")

    # Settings
    @app.get("/settings", response_model=SettingsResponse)
    def read_settings(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        return account_service.get_settings(db, user_id)

    @app.patch("/settings", response_model=SettingsResponse)
    def patch_settings(body: SettingsPatch, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        return account_service.update_settings(db, user_id, body)

    # Sessions
    @app.get("/sessions", response_model=List[SessionResponse])
    def list_sessions(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        return crud.list_sessions(db, user_id)

    @app.post("/sessions", response_model=SessionResponse)
    def start_session(body: SessionCreateRequest, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        return bookkeeping_service.create_session(db, user_id, body.initial_capital, body.currency)

    @app.get("/sessions/active", response_model=Optional[SessionResponse])
    def active_session(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        return crud.get_active_session(db, user_id)

    @app.post("/sessions/switch", response_model=SessionResponse)
    def switch_session(body: SwitchSessionRequest, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        session = bookkeeping_service.switch_active_session(db, user_id, body.session_number)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session #{body.session_number} not found")
        return session

    @app.patch("/sessions/{session_id}", response_model=SessionResponse)
    def patch_session(
        session_id: int,
        body: SessionPatch,
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
    ):
        session = _owned_session(db, session_id, user_id)
        return bookkeeping_service.update_session(db, session, body)

    @app.get("/sessions/{session_id}/stats", response_model=SessionStatsResponse)
    def session_stats(session_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        session = _owned_session(db, session_id, user_id)
        return bookkeeping_service.session_stats(db, session)

    @app.get("/sessions/{session_id}/next-trade-amount", response_model=AmountResponse)
    def session_next_trade_amount(session_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        session = _owned_session(db, session_id, user_id)
        return AmountResponse(amount=bookkeeping_service.suggest_next_trade_amount(db, user_id, session))

    # Trades
    @app.get("/trades", response_model=List[TradeResponse])
    def list_trades(
        session_id: Optional[int] = None,
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
    ):
        return crud.list_trades(db, user_id, session_id)

    @app.post("/trades", response_model=TradeResponse)
    def add_trade(body: TradeCreateRequest, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        """
        Open a pending trade in the given session, or the active one.
        """
        if body.session_id is not None:
            session = _owned_session(db, body.session_id, user_id)
        else:
            session = crud.get_active_session(db, user_id)
            if session is None:
                raise ValidationError("No active session, start one first")
        return bookkeeping_service.append_trade(db, user_id, session, body.trade_amount)

    @app.delete("/trades", response_model=ClearTradesResponse)
    def clear_trades(
        session_id: Optional[int] = None,
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
    ):
        return ClearTradesResponse(deleted=bookkeeping_service.clear_trades(db, user_id, session_id))

    @app.get("/trades/{trade_id}", response_model=TradeResponse)
    def read_trade(trade_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        return _owned_trade(db, trade_id, user_id)

    @app.patch("/trades/{trade_id}", response_model=TradeResponse)
    def patch_trade(
        trade_id: int,
        body: TradePatch,
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
    ):
        trade = _owned_trade(db, trade_id, user_id)
        return bookkeeping_service.update_trade(db, trade, body)

    @app.post("/trades/{trade_id}/settle", response_model=TradeResponse)
    def settle_trade(
        trade_id: int,
        body: SettleRequest,
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
    ):
        trade = _owned_trade(db, trade_id, user_id)
        return bookkeeping_service.settle_trade(db, trade, body.result)

    @app.delete("/trades/{trade_id}")
    def remove_trade(trade_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
        trade = _owned_trade(db, trade_id, user_id)
        bookkeeping_service.delete_trade(db, trade)
        return {"deleted": True}

    @app.get("/export/trades", response_class=PlainTextResponse)
    def export_trades_csv(
        session_id: Optional[int] = None,
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
    ):
        return PlainTextResponse(export_trades(db, user_id, session_id), media_type="text/csv")

    # Calculations
    @app.post("/calc/next-trade-amount", response_model=AmountResponse)
    def calc_next_trade_amount(body: NextTradeAmountRequest):
        return AmountResponse(amount=calculations.next_trade_amount(**body.model_dump()))

    @app.post("/calc/trade-return", response_model=AmountResponse)
    def calc_trade_return(body: TradeReturnRequest):
        return AmountResponse(amount=calculations.trade_return(body.trade_amount, body.result, body.payout_percent))

    @app.post("/calc/position-size", response_model=PositionSizeResponse)
    def calc_position_size(body: PositionSizeRequest):
        return calculations.position_size(**body.model_dump())

    @app.post("/calc/profit-loss", response_model=AmountResponse)
    def calc_profit_loss(body: ProfitLossRequest):
        return AmountResponse(amount=calculations.profit_loss(**body.model_dump()))

    # Presentation notifications
    @app.post("/ui/new-trade", response_model=NotificationResponse)
    async def request_new_trade(user_id: int = Depends(get_current_user_id)):
        return NotificationResponse(delivered=await manager.notify_new_trade(user_id))

    @app.get("/ui/language")
    def read_language(user_id: int = Depends(get_current_user_id)):
        return {"language": manager.language_for(user_id)}

    @app.post("/ui/language", response_model=NotificationResponse)
    async def change_language(body: LanguageRequest, user_id: int = Depends(get_current_user_id)):
        return NotificationResponse(delivered=await manager.notify_language(user_id, body.language))

    @app.websocket("/ws/notifications")
    async def notifications_endpoint(websocket: WebSocket, token: str = ""):
        user_id = decode_user_id(token)
        if user_id is None:
            await websocket.close(code=1008)
            return

        await manager.connect(websocket, user_id)
        try:
            while True:
                data = await websocket.receive_text()
                await manager.handle_message(websocket, data)
        except WebSocketDisconnect:
            manager.disconnect(websocket)


app = create_app()
