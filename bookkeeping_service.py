import logging
import threading
from contextlib import ExitStack
from datetime import date
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import crud
from calculations import LOSS, WIN, next_trade_amount, session_summary, session_targets, trade_return, win_profit
from config import DEFAULT_PAYOUT_PERCENT
from database import transaction
from exceptions import ConflictError, NotFoundError, ValidationError
from models import Trade, TradingSession
from schemas import SessionPatch, TradePatch

logger = logging.getLogger(__name__)


class KeyedLock:
    """One re-entrant lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    def __call__(self, key) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


_locks = KeyedLock()


def _user_lock(user_id: int):
    return _locks(("user", user_id))


def _chain_lock(user_id: int, session_id: Optional[int]):
    # Session-less trades form one chain per user
    if session_id is None:
        return _locks(("loose-trades", user_id))
    return _locks(("session", session_id))


def payout_percent_for(session: Optional[TradingSession]) -> float:
    if session is not None and session.payout_percent:
        return session.payout_percent
    return DEFAULT_PAYOUT_PERCENT


def _opening_balance(db: Session, user_id: int, session: Optional[TradingSession]) -> float:
    if session is not None:
        return session.initial_capital
    settings = crud.get_settings(db, user_id)
    return settings.initial_capital if settings else 0.0


def _balance_before(db: Session, trade: Trade) -> float:
    prev = crud.previous_trade(db, trade)
    if prev is not None:
        return prev.current_balance
    return _opening_balance(db, trade.user_id, trade.session)


def _chained_balance(balance_before: float, trade: Trade) -> float:
    # A pending trade holds its stake until it is settled
    if trade.result is None:
        return balance_before - trade.trade_amount
    return balance_before + trade.return_amount


def _rebalance_after(
    db: Session,
    user_id: int,
    session_id: Optional[int],
    sequence_number: int,
    running_balance: float,
) -> int:
    """
    Recompute current_balance for every trade after sequence_number, in
    increasing order, each from its freshly computed predecessor.
    """
    later = crud.trades_after(db, user_id, session_id, sequence_number)
    for trade in later:
        running_balance = _chained_balance(running_balance, trade)
        trade.current_balance = running_balance
    db.flush()
    return len(later)


def _refresh_tallies(db: Session, session: Optional[TradingSession]) -> None:
    if session is None:
        return
    trades = crud.list_session_trades(db, session.user_id, session.id)
    session.total_trades = len(trades)
    session.winning_trades = sum(1 for t in trades if t.result == WIN)
    session.losing_trades = sum(1 for t in trades if t.result == LOSS)
    if trades:
        session.capital_final = trades[-1].current_balance
        session.account_gain = session.capital_final - session.initial_capital
        session.win_profit = win_profit(trades)
    else:
        session.capital_final = None
        session.account_gain = None
        session.win_profit = None
    db.flush()


# Sessions

def create_session(db: Session, user_id: int, initial_capital: float, currency: str = "USD") -> TradingSession:
    """
    Start a new active session numbered one past the user's highest.
    Every other session of the user is deactivated in the same transaction.
    """
    if initial_capital <= 0:
        raise ValidationError("Initial capital must be greater than zero")

    with _user_lock(user_id):
        db.expire_all()
        try:
            with transaction(db):
                session_number = crud.max_session_number(db, user_id) + 1
                crud.deactivate_sessions(db, user_id)
                session = crud.create_session(
                    db,
                    user_id=user_id,
                    session_number=session_number,
                    initial_capital=initial_capital,
                    currency=currency,
                    session_date=date.today(),
                )
        except IntegrityError as e:
            raise ConflictError(f"Session number already exists for user {user_id}") from e

    db.refresh(session)
    logger.info(f"User {user_id} started session #{session.session_number} with {initial_capital} {currency}")
    return session


def switch_active_session(db: Session, user_id: int, target_session_number: int) -> Optional[TradingSession]:
    """
    Make the session with target_session_number the user's active one.

    Returns None when no such session exists; the caller reports it.
    Two sessions sharing the number is a data-integrity error.
    """
    with _user_lock(user_id):
        db.expire_all()
        matches = crud.get_sessions_by_number(db, user_id, target_session_number)
        if not matches:
            logger.warning(f"User {user_id} has no session #{target_session_number}")
            return None
        if len(matches) > 1:
            raise ConflictError(
                f"Found {len(matches)} sessions numbered {target_session_number} for user {user_id}"
            )

        target = matches[0]
        active = crud.get_active_session(db, user_id)
        if active is not None and active.session_number == target_session_number:
            return active

        with transaction(db):
            crud.deactivate_sessions(db, user_id, exclude_id=target.id)
            target.is_active = True

    db.refresh(target)
    logger.info(f"User {user_id} switched to session #{target_session_number}")
    return target


def update_session(db: Session, session: TradingSession, patch: SessionPatch) -> TradingSession:
    with _user_lock(session.user_id):
        with transaction(db):
            changes = crud.update_session(db, session, patch)
            if changes.get("is_active"):
                crud.deactivate_sessions(db, session.user_id, exclude_id=session.id)
    db.refresh(session)
    return session


def session_stats(db: Session, session: TradingSession) -> dict:
    trades = crud.list_session_trades(db, session.user_id, session.id)
    settings = crud.get_settings(db, session.user_id)
    stats = session_summary(session.initial_capital, trades)
    stats.update(
        session_targets(
            session.initial_capital,
            daily_profit_target_percent=settings.daily_profit_target_percent if settings else None,
            risk_percent=settings.risk_percent if settings else None,
            stop_loss=session.stop_loss,
            stop_loss_percent=session.stop_loss_percent,
            max_loss_limit=session.max_loss_limit,
        )
    )
    return stats


def suggest_next_trade_amount(db: Session, user_id: int, session: TradingSession) -> float:
    settings = crud.get_settings(db, user_id)
    if settings is None:
        raise NotFoundError(f"No settings found for user {user_id}")

    last = crud.last_trade(db, user_id, session.id)
    if last is None:
        current_balance, previous_amount, previous_result = session.initial_capital, None, None
    else:
        current_balance, previous_amount, previous_result = last.current_balance, last.trade_amount, last.result

    return next_trade_amount(
        current_balance=current_balance,
        previous_trade_amount=previous_amount,
        previous_result=previous_result,
        risk_percent=settings.risk_percent,
        recovery_multiplier=settings.recovery_multiplier,
        payout_percent=payout_percent_for(session),
    )


# Trades

def append_trade(db: Session, user_id: int, session: Optional[TradingSession], trade_amount: float) -> Trade:
    """
    Open a pending trade at the end of the session's chain.
    The stake is taken off the running balance until the trade settles.
    """
    if trade_amount <= 0:
        raise ValidationError("Trade amount must be greater than zero")

    session_id = session.id if session is not None else None
    with _chain_lock(user_id, session_id):
        db.expire_all()
        with transaction(db):
            last = crud.last_trade(db, user_id, session_id)
            balance = last.current_balance if last is not None else _opening_balance(db, user_id, session)
            # Same as count + 1 until a trade is deleted out of the middle
            sequence_number = crud.max_sequence_number(db, user_id, session_id) + 1
            trade = crud.create_trade(
                db,
                user_id=user_id,
                session_id=session_id,
                trade_amount=trade_amount,
                current_balance=balance - trade_amount,
                sequence_number=sequence_number,
            )
            _refresh_tallies(db, session)

    db.refresh(trade)
    return trade


def _recompute(db: Session, trade: Trade, changes: dict) -> None:
    if trade.result is not None and "return_amount" not in changes and (
        "result" in changes or "trade_amount" in changes
    ):
        trade.return_amount = trade_return(trade.trade_amount, trade.result, payout_percent_for(trade.session))
    if "current_balance" not in changes:
        trade.current_balance = _chained_balance(_balance_before(db, trade), trade)

    cascaded = _rebalance_after(db, trade.user_id, trade.session_id, trade.sequence_number, trade.current_balance)
    _refresh_tallies(db, trade.session)
    if cascaded:
        logger.info(f"Trade {trade.id} changed, rebalanced {cascaded} later trade(s)")


def settle_trade(db: Session, trade: Trade, result: str) -> Trade:
    """
    Record a win or loss on a trade, pending or already settled.

    return_amount comes from the owning session's payout percent, the
    trade's balance is its predecessor's plus the return, and every later
    trade in the session is rebalanced in sequence order.
    """
    # Rejects anything but win/loss before touching the database
    trade_return(trade.trade_amount, result, DEFAULT_PAYOUT_PERCENT)

    with _chain_lock(trade.user_id, trade.session_id):
        db.expire_all()
        with transaction(db):
            trade.result = result
            _recompute(db, trade, {"result": result})

    db.refresh(trade)
    logger.info(f"Trade {trade.id} settled as {result}: return {trade.return_amount:.2f}")
    return trade


def update_trade(db: Session, trade: Trade, patch: TradePatch) -> Trade:
    with _chain_lock(trade.user_id, trade.session_id):
        db.expire_all()
        with transaction(db):
            changes = crud.update_trade(db, trade, patch)
            _recompute(db, trade, changes)

    db.refresh(trade)
    return trade


def delete_trade(db: Session, trade: Trade) -> None:
    user_id, session_id, sequence_number = trade.user_id, trade.session_id, trade.sequence_number
    with _chain_lock(user_id, session_id):
        db.expire_all()
        with transaction(db):
            session = trade.session
            balance = _balance_before(db, trade)
            crud.delete_trade(db, trade)
            _rebalance_after(db, user_id, session_id, sequence_number, balance)
            _refresh_tallies(db, session)


def _chain_locks_to_clear(db: Session, user_id: int, session_id: Optional[int]) -> list:
    if session_id is not None:
        return [_chain_lock(user_id, session_id)]
    # Ascending session id, then the loose-trades chain
    session_ids = sorted(s.id for s in crud.list_sessions(db, user_id))
    return [_chain_lock(user_id, sid) for sid in session_ids] + [_chain_lock(user_id, None)]


def clear_trades(db: Session, user_id: int, session_id: Optional[int] = None) -> bool:
    """
    Delete the user's trades, optionally only one session's. Not undoable.

    Waits on the chain lock of every affected session, so in-flight
    appends and settlements finish first. The user lock keeps new
    sessions out until the clear is done.
    """
    with _user_lock(user_id), ExitStack() as stack:
        db.expire_all()
        for lock in _chain_locks_to_clear(db, user_id, session_id):
            stack.enter_context(lock)
        db.expire_all()
        with transaction(db):
            deleted = crud.delete_trades(db, user_id, session_id)
            db.expire_all()
            if session_id is not None:
                _refresh_tallies(db, crud.get_session(db, session_id, user_id))
            else:
                for session in crud.list_sessions(db, user_id):
                    _refresh_tallies(db, session)

    logger.info(f"Cleared {deleted} trade(s) for user {user_id}" + (f" in session {session_id}" if session_id else ""))
    return deleted > 0
