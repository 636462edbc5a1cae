from types import SimpleNamespace

import pytest

from calculations import (
    current_streak,
    next_trade_amount,
    position_size,
    profit_loss,
    session_summary,
    session_targets,
    total_profit_loss,
    trade_return,
    win_rate,
)
from exceptions import DivisionByZeroError, ValidationError


def make_trade(seq, result, return_amount=0.0, current_balance=0.0, trade_amount=10.0):
    return SimpleNamespace(
        sequence_number=seq,
        result=result,
        return_amount=return_amount,
        current_balance=current_balance,
        trade_amount=trade_amount,
    )


def test_next_trade_amount_after_loss_applies_recovery_multiplier():
    assert next_trade_amount(1000, 50, "loss", 2, 2, 92) == 100


def test_next_trade_amount_without_history_uses_risk_percent():
    assert next_trade_amount(1000, None, None, 2, 2, 92) == 20


def test_next_trade_amount_after_win_uses_risk_percent():
    assert next_trade_amount(1500, 50, "win", 2, 2, 92) == pytest.approx(30)


def test_next_trade_amount_after_loss_with_zero_stake_falls_back():
    assert next_trade_amount(1000, 0, "loss", 2, 2, 92) == pytest.approx(20)


def test_next_trade_amount_ignores_payout_percent():
    assert next_trade_amount(1000, 50, "loss", 2, 2, 10) == next_trade_amount(1000, 50, "loss", 2, 2, 92)


def test_next_trade_amount_is_not_clamped_to_balance():
    assert next_trade_amount(100, 80, "loss", 2, 2, 92) == 160


def test_trade_return():
    assert trade_return(100, "win", 92) == 92
    assert trade_return(100, "loss", 92) == -100


@pytest.mark.parametrize("result", ["WIN", "draw", None, ""])
def test_trade_return_rejects_unknown_result(result):
    with pytest.raises(ValidationError):
        trade_return(100, result, 92)


def test_position_size():
    result = position_size(10000, 2, 100, 95)

    assert result["risk_amount"] == pytest.approx(200)
    assert result["max_quantity"] == 40
    assert result["position_size"] == pytest.approx(4000)


def test_position_size_floors_quantity():
    result = position_size(10000, 1, 50, 47)

    assert result["max_quantity"] == 33
    assert result["position_size"] == pytest.approx(1650)


def test_position_size_with_equal_prices_fails():
    with pytest.raises(DivisionByZeroError):
        position_size(10000, 2, 100, 100)

    # Still catchable as a plain division error
    with pytest.raises(ZeroDivisionError):
        position_size(10000, 2, 100, 100)


def test_profit_loss():
    assert profit_loss(100, 110, 5, "long") == 50
    assert profit_loss(100, 110, 5, "short") == -50


def test_profit_loss_rejects_unknown_direction():
    with pytest.raises(ValidationError):
        profit_loss(100, 110, 5, "sideways")


def test_win_rate():
    assert win_rate([]) == 0
    trades = [make_trade(1, "win"), make_trade(2, "loss"), make_trade(3, "win"), make_trade(4, None)]
    assert win_rate(trades) == pytest.approx(50)


def test_total_profit_loss():
    trades = [make_trade(1, "win", 18.4), make_trade(2, "loss", -20), make_trade(3, None, 0)]
    assert total_profit_loss(trades) == pytest.approx(-1.6)
    assert total_profit_loss([]) == 0


def test_current_streak_counts_latest_run_and_skips_pending():
    trades = [
        make_trade(1, "win"),
        make_trade(2, "loss"),
        make_trade(3, "loss"),
        make_trade(4, None),
        make_trade(5, "loss"),
    ]
    assert current_streak(trades) == ("loss", 3)


def test_current_streak_without_settled_trades():
    assert current_streak([]) == (None, 0)
    assert current_streak([make_trade(1, None)]) == (None, 0)


def test_session_summary():
    trades = [
        make_trade(1, "win", 18.4, 1018.4),
        make_trade(2, "loss", -20, 998.4),
        make_trade(3, None, 0, 978.4),
    ]
    summary = session_summary(1000, trades)

    assert summary["current_balance"] == pytest.approx(978.4)
    assert summary["total_trades"] == 3
    assert summary["completed_trades"] == 2
    assert summary["win_trades"] == 1
    assert summary["loss_trades"] == 1
    assert summary["net_profit"] == pytest.approx(-1.6)
    assert summary["win_profit"] == pytest.approx(18.4)
    assert summary["profit_percent"] == pytest.approx(-0.16)
    assert summary["streak"] == {"type": "loss", "count": 1}


def test_session_summary_without_trades():
    summary = session_summary(0, [])

    assert summary["current_balance"] == 0
    assert summary["profit_percent"] == 0
    assert summary["win_rate"] == 0


def test_session_targets_defaults():
    targets = session_targets(1000, daily_profit_target_percent=None, risk_percent=0)

    assert targets == {
        "stop_loss": pytest.approx(800),
        "stop_loss_percent": 20.0,
        "max_loss_limit": 16,
        "daily_profit_target_percent": 2.0,
        "daily_target_capital": pytest.approx(1020),
        "sessions_required": 1,
    }


def test_session_targets_rounds_sessions_up():
    targets = session_targets(2000, daily_profit_target_percent=5, risk_percent=1.5, stop_loss=1500)

    assert targets["stop_loss"] == 1500
    assert targets["daily_target_capital"] == pytest.approx(2100)
    assert targets["sessions_required"] == 4
