import math
from typing import Iterable, Optional, Sequence

from exceptions import DivisionByZeroError, ValidationError

WIN = "win"
LOSS = "loss"
LONG = "long"
SHORT = "short"


def next_trade_amount(
    current_balance: float,
    previous_trade_amount: Optional[float],
    previous_result: Optional[str],
    risk_percent: float,
    recovery_multiplier: float,
    payout_percent: float,
) -> float:
    """
    Stake for the next trade.

    After a loss the previous stake is scaled by the recovery multiplier,
    otherwise the stake is risk_percent of the current balance.
    payout_percent is accepted but does not affect the amount.
    The result is not clamped to the balance.
    """
    if previous_result == LOSS and previous_trade_amount:
        return previous_trade_amount * recovery_multiplier
    return current_balance * (risk_percent / 100)


def trade_return(trade_amount: float, result: str, payout_percent: float) -> float:
    """
    Signed P&L of a settled trade: the payout share of the stake on a win,
    the whole stake lost on a loss.
    """
    if result == WIN:
        return trade_amount * (payout_percent / 100)
    if result == LOSS:
        return -trade_amount
    raise ValidationError(f"Invalid result {result!r}, must be 'win' or 'loss'")


def position_size(
    account_balance: float,
    risk_percentage: float,
    entry_price: float,
    stop_loss_price: float,
) -> dict:
    risk_amount = account_balance * (risk_percentage / 100)
    risk_per_unit = abs(entry_price - stop_loss_price)
    if risk_per_unit == 0:
        raise DivisionByZeroError("Entry price and stop loss price must differ")

    max_quantity = math.floor(risk_amount / risk_per_unit)
    return {
        "risk_amount": risk_amount,
        "position_size": max_quantity * entry_price,
        "max_quantity": max_quantity,
    }


def profit_loss(entry_price: float, exit_price: float, quantity: float, direction: str) -> float:
    if direction == LONG:
        return (exit_price - entry_price) * quantity
    if direction == SHORT:
        return (entry_price - exit_price) * quantity
    raise ValidationError(f"Invalid direction {direction!r}, must be 'long' or 'short'")


def win_rate(trades: Sequence) -> float:
    """Percentage of trades marked as wins; 0 for no trades."""
    if not trades:
        return 0.0
    wins = sum(1 for t in trades if t.result == WIN)
    return wins / len(trades) * 100


def total_profit_loss(trades: Iterable) -> float:
    return sum(t.return_amount for t in trades)


def win_profit(trades: Iterable) -> float:
    return sum(t.return_amount for t in trades if t.result == WIN)


def current_streak(trades: Iterable) -> tuple[Optional[str], int]:
    """
    Most recent run of identical results, newest trade first.
    Pending trades are skipped.
    """
    streak_type = None
    count = 0
    for trade in sorted(trades, key=lambda t: t.sequence_number, reverse=True):
        if trade.result is None:
            continue
        if streak_type is None:
            streak_type = trade.result
            count = 1
        elif trade.result == streak_type:
            count += 1
        else:
            break
    return streak_type, count


def session_summary(initial_capital: float, trades: Sequence) -> dict:
    """
    Running figures for one session. Trades must be in ascending
    sequence order.
    """
    current_balance = trades[-1].current_balance if trades else initial_capital
    net_profit = total_profit_loss(trades)
    profit_percent = (net_profit / initial_capital) * 100 if initial_capital > 0 else 0.0
    streak_type, streak_count = current_streak(trades)

    return {
        "current_balance": current_balance,
        "initial_capital": initial_capital,
        "total_trades": len(trades),
        "completed_trades": sum(1 for t in trades if t.result is not None),
        "win_trades": sum(1 for t in trades if t.result == WIN),
        "loss_trades": sum(1 for t in trades if t.result == LOSS),
        "net_profit": net_profit,
        "win_profit": win_profit(trades),
        "profit_percent": profit_percent,
        "win_rate": win_rate(trades),
        "streak": {"type": streak_type, "count": streak_count},
    }


def session_targets(
    initial_capital: float,
    daily_profit_target_percent: Optional[float],
    risk_percent: Optional[float],
    stop_loss: Optional[float] = None,
    stop_loss_percent: Optional[float] = None,
    max_loss_limit: Optional[int] = None,
) -> dict:
    """
    Goal and stop figures for a session. Unset or zero inputs fall back to
    a 2% daily target, 2% risk, a stop at 80% of initial capital, a 20%
    stop-loss percent and a limit of 16 losses.
    """
    daily_target = daily_profit_target_percent or 2.0
    risk = risk_percent or 2.0
    return {
        "stop_loss": stop_loss or initial_capital * 0.8,
        "stop_loss_percent": stop_loss_percent or 20.0,
        "max_loss_limit": max_loss_limit or 16,
        "daily_profit_target_percent": daily_target,
        "daily_target_capital": initial_capital * (1 + daily_target / 100),
        "sessions_required": math.ceil(daily_target / risk),
    }
