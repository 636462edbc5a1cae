"""
Persistence operations for users, settings, sessions and trades.

Nothing here commits. Callers group calls inside database.transaction()
so multi-step changes land together or not at all.
"""
from datetime import date
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from auth_models import User
from exceptions import ValidationError
from models import Trade, TradingSession, UserSettings
from schemas import Patch

DEFAULT_SETTINGS = {
    "initial_capital": 18000.0,
    "risk_percent": 2.0,
    "recovery_multiplier": 2.0,
    "daily_profit_target_percent": 2.0,
    "daily_goal_format": "%",
    "stop_loss_alert_percent": 20.0,
    "session_end_alert": False,
    "low_trade_alert": False,
    "auto_copy_balance": True,
    "auto_log_session": True,
    "auto_count_session": True,
    "currency": "USD",
}


def apply_patch(obj, patch: Patch) -> dict:
    changes = patch.changes()
    if not changes:
        raise ValidationError("No valid fields provided for update")
    for field, value in changes.items():
        setattr(obj, field, value)
    return changes


# Users

def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def create_user(db: Session, email: str, password_hash: str) -> User:
    user = User(email=email, password_hash=password_hash)
    db.add(user)
    db.flush()
    return user


# Settings

def create_settings(db: Session, user_id: int) -> UserSettings:
    settings = UserSettings(user_id=user_id, **DEFAULT_SETTINGS)
    db.add(settings)
    db.flush()
    return settings


def get_settings(db: Session, user_id: int) -> Optional[UserSettings]:
    return db.query(UserSettings).filter(UserSettings.user_id == user_id).first()


def update_settings(db: Session, settings: UserSettings, patch: Patch) -> UserSettings:
    apply_patch(settings, patch)
    db.flush()
    return settings


# Sessions

def list_sessions(db: Session, user_id: int) -> List[TradingSession]:
    return (
        db.query(TradingSession)
        .filter(TradingSession.user_id == user_id)
        .order_by(TradingSession.session_number.desc())
        .all()
    )


def get_session(db: Session, session_id: int, user_id: Optional[int] = None) -> Optional[TradingSession]:
    query = db.query(TradingSession).filter(TradingSession.id == session_id)
    if user_id is not None:
        query = query.filter(TradingSession.user_id == user_id)
    return query.first()


def get_active_session(db: Session, user_id: int) -> Optional[TradingSession]:
    return (
        db.query(TradingSession)
        .filter(TradingSession.user_id == user_id)
        .filter(TradingSession.is_active == True)  # noqa: E712
        .order_by(TradingSession.session_number.desc())
        .first()
    )


def get_sessions_by_number(db: Session, user_id: int, session_number: int) -> List[TradingSession]:
    return (
        db.query(TradingSession)
        .filter(TradingSession.user_id == user_id, TradingSession.session_number == session_number)
        .all()
    )


def max_session_number(db: Session, user_id: int) -> int:
    value = (
        db.query(func.max(TradingSession.session_number))
        .filter(TradingSession.user_id == user_id)
        .scalar()
    )
    return value or 0


def deactivate_sessions(db: Session, user_id: int, exclude_id: Optional[int] = None) -> int:
    query = db.query(TradingSession).filter(
        TradingSession.user_id == user_id, TradingSession.is_active == True  # noqa: E712
    )
    if exclude_id is not None:
        query = query.filter(TradingSession.id != exclude_id)

    sessions = query.all()
    for session in sessions:
        session.is_active = False
    db.flush()
    return len(sessions)


def create_session(
    db: Session,
    user_id: int,
    session_number: int,
    initial_capital: float,
    currency: str,
    session_date: date,
) -> TradingSession:
    session = TradingSession(
        user_id=user_id,
        session_number=session_number,
        date=session_date,
        initial_capital=initial_capital,
        currency=currency,
        is_active=True,
        total_trades=0,
        winning_trades=0,
        losing_trades=0,
    )
    db.add(session)
    db.flush()
    return session


def update_session(db: Session, session: TradingSession, patch: Patch) -> dict:
    changes = apply_patch(session, patch)
    db.flush()
    return changes


# Trades

def create_trade(
    db: Session,
    user_id: int,
    session_id: Optional[int],
    trade_amount: float,
    current_balance: float,
    sequence_number: int,
) -> Trade:
    trade = Trade(
        user_id=user_id,
        session_id=session_id,
        result=None,
        trade_amount=trade_amount,
        return_amount=0.0,
        current_balance=current_balance,
        sequence_number=sequence_number,
    )
    db.add(trade)
    db.flush()
    return trade


def get_trade(db: Session, trade_id: int, user_id: Optional[int] = None) -> Optional[Trade]:
    query = db.query(Trade).filter(Trade.id == trade_id)
    if user_id is not None:
        query = query.filter(Trade.user_id == user_id)
    return query.first()


def _scope(query, user_id: int, session_id: Optional[int]):
    query = query.filter(Trade.user_id == user_id)
    if session_id is None:
        return query.filter(Trade.session_id.is_(None))
    return query.filter(Trade.session_id == session_id)


def list_trades(db: Session, user_id: int, session_id: Optional[int] = None) -> List[Trade]:
    """
    Session-scoped listings are ascending by sequence number,
    user-wide listings descending.
    """
    query = db.query(Trade).filter(Trade.user_id == user_id)
    if session_id is not None:
        return query.filter(Trade.session_id == session_id).order_by(Trade.sequence_number.asc()).all()
    return query.order_by(Trade.sequence_number.desc(), Trade.id.desc()).all()


def list_session_trades(db: Session, user_id: int, session_id: Optional[int]) -> List[Trade]:
    return _scope(db.query(Trade), user_id, session_id).order_by(Trade.sequence_number.asc()).all()


def max_sequence_number(db: Session, user_id: int, session_id: Optional[int]) -> int:
    value = _scope(db.query(func.max(Trade.sequence_number)), user_id, session_id).scalar()
    return value or 0


def previous_trade(db: Session, trade: Trade) -> Optional[Trade]:
    return (
        _scope(db.query(Trade), trade.user_id, trade.session_id)
        .filter(Trade.sequence_number < trade.sequence_number)
        .order_by(Trade.sequence_number.desc())
        .first()
    )


def last_trade(db: Session, user_id: int, session_id: Optional[int]) -> Optional[Trade]:
    return _scope(db.query(Trade), user_id, session_id).order_by(Trade.sequence_number.desc()).first()


def trades_after(db: Session, user_id: int, session_id: Optional[int], sequence_number: int) -> List[Trade]:
    return (
        _scope(db.query(Trade), user_id, session_id)
        .filter(Trade.sequence_number > sequence_number)
        .order_by(Trade.sequence_number.asc())
        .all()
    )


def update_trade(db: Session, trade: Trade, patch: Patch) -> dict:
    changes = apply_patch(trade, patch)
    db.flush()
    return changes


def delete_trade(db: Session, trade: Trade) -> None:
    db.delete(trade)
    db.flush()


def delete_trades(db: Session, user_id: int, session_id: Optional[int] = None) -> int:
    query = db.query(Trade).filter(Trade.user_id == user_id)
    if session_id is not None:
        query = query.filter(Trade.session_id == session_id)
    deleted = query.delete(synchronize_session=False)
    db.flush()
    return deleted
