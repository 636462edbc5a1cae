from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from database import Base
from auth_models import User


class IntFlag(TypeDecorator):
    """Boolean stored as 0/1 in an INTEGER column."""

    impl = Integer
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return 1 if value else 0

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return bool(value)


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, unique=True, nullable=False)
    initial_capital = Column(Float, nullable=False, default=18000.0)
    risk_percent = Column(Float, nullable=False, default=2.0)
    recovery_multiplier = Column(Float, nullable=False, default=2.0)
    daily_profit_target_percent = Column(Float, nullable=False, default=2.0)
    daily_goal_format = Column(String, nullable=False, default="%")  # "%" or "$"
    stop_loss_alert_percent = Column(Float, nullable=False, default=20.0)
    session_end_alert = Column(IntFlag, nullable=False, default=False)
    low_trade_alert = Column(IntFlag, nullable=False, default=False)
    auto_copy_balance = Column(IntFlag, nullable=False, default=True)
    auto_log_session = Column(IntFlag, nullable=False, default=True)
    auto_count_session = Column(IntFlag, nullable=False, default=True)
    currency = Column(String, nullable=False, default="USD")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="settings")


class TradingSession(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    session_number = Column(Integer, nullable=False)
    date = Column(Date, nullable=False, index=True)
    initial_capital = Column(Float, nullable=False)
    capital_final = Column(Float, nullable=True)
    account_gain = Column(Float, nullable=True)
    win_profit = Column(Float, nullable=True)
    stop_loss = Column(Float, nullable=True)
    stop_loss_percent = Column(Float, nullable=True)
    max_loss_limit = Column(Integer, nullable=True)
    total_trades = Column(Integer, default=0)
    winning_trades = Column(Integer, default=0)
    losing_trades = Column(Integer, default=0)
    payout_percent = Column(Float, nullable=True)
    currency = Column(String, nullable=False, default="USD")
    is_active = Column(IntFlag, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "session_number", name="uq_sessions_user_number"),
    )

    user = relationship("User", back_populates="sessions")
    trades = relationship("Trade", back_populates="session", passive_deletes=True)


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="SET NULL"), index=True, nullable=True)
    result = Column(String, nullable=True)  # "win", "loss" or None while pending
    trade_amount = Column(Float, nullable=False)
    return_amount = Column(Float, nullable=False, default=0.0)
    current_balance = Column(Float, nullable=False)
    sequence_number = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("result IN ('win', 'loss')", name="ck_trades_result"),
        UniqueConstraint("user_id", "session_id", "sequence_number", name="uq_trades_chain_sequence"),
    )

    user = relationship("User", back_populates="trades")
    session = relationship("TradingSession", back_populates="trades")
