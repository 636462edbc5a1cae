import csv
import io
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from models import Trade

EXPORT_HEADERS = ["No.", "Result", "Trade Amount", "Return", "Current Balance"]


def trades_to_csv(trades: Iterable[Trade]) -> str:
    """
    One row per trade in ascending sequence order, numbered from 1.
    Money columns use two decimals; pending trades have an empty result.
    """
    ordered = sorted(trades, key=lambda t: t.sequence_number)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for index, trade in enumerate(ordered, start=1):
        writer.writerow([
            index,
            trade.result.upper() if trade.result else "",
            f"{trade.trade_amount:.2f}",
            f"{trade.return_amount:.2f}",
            f"{trade.current_balance:.2f}",
        ])
    return buffer.getvalue()


def export_trades(db: Session, user_id: int, session_id: Optional[int] = None) -> str:
    query = db.query(Trade).filter(Trade.user_id == user_id)
    if session_id is not None:
        query = query.filter(Trade.session_id == session_id)
    return trades_to_csv(query.order_by(Trade.sequence_number.asc(), Trade.id.asc()).all())
