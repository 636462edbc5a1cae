import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional

TradeResult = Literal["win", "loss"]
Direction = Literal["long", "short"]


class Patch(BaseModel):
    """
    Sparse update. Unknown keys are dropped, and only the non-null fields
    the caller actually sent are applied.
    """

    model_config = ConfigDict(extra="ignore")

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude_none=True)


# Settings

class SettingsPatch(Patch):
    initial_capital: Optional[float] = Field(default=None, gt=0)
    risk_percent: Optional[float] = Field(default=None, ge=0)
    recovery_multiplier: Optional[float] = Field(default=None, ge=0)
    daily_profit_target_percent: Optional[float] = None
    daily_goal_format: Optional[Literal["%", "$"]] = None
    stop_loss_alert_percent: Optional[float] = None
    session_end_alert: Optional[bool] = None
    low_trade_alert: Optional[bool] = None
    auto_copy_balance: Optional[bool] = None
    auto_log_session: Optional[bool] = None
    auto_count_session: Optional[bool] = None
    currency: Optional[str] = None


class SettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    initial_capital: float
    risk_percent: float
    recovery_multiplier: float
    daily_profit_target_percent: float
    daily_goal_format: str
    stop_loss_alert_percent: float
    session_end_alert: bool
    low_trade_alert: bool
    auto_copy_balance: bool
    auto_log_session: bool
    auto_count_session: bool
    currency: str


# Sessions

class SessionCreateRequest(BaseModel):
    initial_capital: float = Field(gt=0, description="Starting capital for the session")
    currency: str = "USD"


class SessionPatch(Patch):
    capital_final: Optional[float] = None
    account_gain: Optional[float] = None
    win_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    stop_loss_percent: Optional[float] = None
    max_loss_limit: Optional[int] = None
    total_trades: Optional[int] = None
    winning_trades: Optional[int] = None
    losing_trades: Optional[int] = None
    payout_percent: Optional[float] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class SwitchSessionRequest(BaseModel):
    session_number: int = Field(ge=1)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    session_number: int
    date: datetime.date
    initial_capital: float
    capital_final: Optional[float] = None
    account_gain: Optional[float] = None
    win_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    stop_loss_percent: Optional[float] = None
    max_loss_limit: Optional[int] = None
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    payout_percent: Optional[float] = None
    currency: str
    is_active: bool


class StreakResponse(BaseModel):
    type: Optional[TradeResult] = None
    count: int = 0


class SessionStatsResponse(BaseModel):
    current_balance: float
    initial_capital: float
    total_trades: int
    completed_trades: int
    win_trades: int
    loss_trades: int
    net_profit: float
    win_profit: float
    profit_percent: float
    win_rate: float
    streak: StreakResponse
    stop_loss: float
    stop_loss_percent: float
    max_loss_limit: int
    daily_profit_target_percent: float
    daily_target_capital: float
    sessions_required: int


class AmountResponse(BaseModel):
    amount: float


# Trades

class TradeCreateRequest(BaseModel):
    trade_amount: float = Field(gt=0, description="Stake for the trade")
    session_id: Optional[int] = None  # defaults to the active session


class TradePatch(Patch):
    result: Optional[TradeResult] = None
    trade_amount: Optional[float] = Field(default=None, gt=0)
    return_amount: Optional[float] = None
    current_balance: Optional[float] = None


class SettleRequest(BaseModel):
    result: TradeResult


class TradeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    session_id: Optional[int] = None
    result: Optional[TradeResult] = None
    trade_amount: float
    return_amount: float
    current_balance: float
    sequence_number: int


class ClearTradesResponse(BaseModel):
    deleted: bool


# Calculations

class NextTradeAmountRequest(BaseModel):
    current_balance: float
    previous_trade_amount: Optional[float] = None
    previous_result: Optional[TradeResult] = None
    risk_percent: float
    recovery_multiplier: float
    payout_percent: float = 92.0


class TradeReturnRequest(BaseModel):
    trade_amount: float
    # Checked by the calculator so bad values come back as validation errors
    result: str
    payout_percent: float = 92.0


class PositionSizeRequest(BaseModel):
    account_balance: float
    risk_percentage: float
    entry_price: float
    stop_loss_price: float


class PositionSizeResponse(BaseModel):
    risk_amount: float
    position_size: float
    max_quantity: int


class ProfitLossRequest(BaseModel):
    entry_price: float
    exit_price: float
    quantity: float
    direction: Direction


# Presentation notifications

class LanguageRequest(BaseModel):
    language: str


class NotificationResponse(BaseModel):
    delivered: int

