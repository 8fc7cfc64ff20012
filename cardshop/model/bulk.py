# model/bulk.py
"""
Admin batch operations over selected orders.

bulk_delete is all-or-nothing: if any selected order is still active
(pending, paid or refund_pending) nothing is deleted and the blocking order
numbers are reported. Deleted orders take their event history with them;
cards sold to them stay sold and are only detached.
"""
from __future__ import annotations
import csv
import io
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidState, ValidationError
from ..helpers import format_money, to_iso
from . import ledger
from .db import Card, OrderEvent, TERMINAL_STATUSES

log = logging.getLogger(__name__)

orders = ledger.orders

EXPORT_COLUMNS = [
    "order_no", "product_name", "quantity", "total_amount",
    "payment_method", "email", "status", "refund_reason", "trade_no",
    "created_at", "paid_at", "completed_at", "refunded_at",
]


def _ids(order_ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(i for i in order_ids if i))


async def bulk_delete(
    db: AsyncSession, order_ids: Iterable[str]
) -> Dict[str, Any]:
    ids = _ids(order_ids)
    if not ids:
        raise ValidationError("no orders selected",
                              fields={"ids": "select at least one order"})

    async with db.begin():
        rows = (await db.execute(
            select(orders.c.id, orders.c.order_no, orders.c.status)
            .where(orders.c.id.in_(ids))
        )).all()
        blocking = sorted(
            r.order_no for r in rows if r.status not in TERMINAL_STATUSES
        )
        if blocking:
            raise InvalidState(
                "active orders cannot be deleted: " + ", ".join(blocking),
                data={"blocking": blocking},
            )
        found = [r.id for r in rows]
        if found:
            await db.execute(
                update(Card).where(Card.order_id.in_(found))
                .values(order_id=None)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                delete(OrderEvent).where(OrderEvent.order_id.in_(found))
                .execution_options(synchronize_session=False)
            )
            await db.execute(delete(orders).where(orders.c.id.in_(found)))

    log.info("bulk delete: %d orders removed (%d ids requested)",
             len(found), len(ids))
    return {"deleted": len(found), "requested": len(ids)}


async def export_rows(
    db: AsyncSession,
    order_ids: Optional[Iterable[str]] = None,
    status: Optional[str] = None,
    q: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Orders selected by id, or by the list filters when no ids are
    given. Read-only."""
    if order_ids is not None:
        ids = _ids(order_ids)
        if not ids:
            raise ValidationError("no orders selected",
                                  fields={"ids": "select at least one order"})
        conds = [orders.c.id.in_(ids)]
    else:
        conds = ledger.filter_conditions(status, q)

    async with db.begin():
        rows = (await db.execute(
            select(orders).where(*conds).order_by(orders.c.created_at.desc())
        )).mappings().all()

    return [{
        "order_no": r["order_no"],
        "product_name": r["product_name"],
        "quantity": r["quantity"],
        "total_amount": format_money(r["total_amount"]),
        "payment_method": r["payment_method"],
        "email": r["email"],
        "status": r["status"],
        "refund_reason": r["refund_reason"] or "",
        "trade_no": r["trade_no"] or "",
        "created_at": to_iso(r["created_at"]) or "",
        "paid_at": to_iso(r["paid_at"]) or "",
        "completed_at": to_iso(r["completed_at"]) or "",
        "refunded_at": to_iso(r["refunded_at"]) or "",
    } for r in rows]


def iter_csv(rows: Iterable[Dict[str, Any]]) -> Iterator[str]:
    # one chunk per line so the response can stream
    buf = io.StringIO()
    w = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS)

    def _flush() -> str:
        out = buf.getvalue()
        buf.seek(0)
        buf.truncate(0)
        return out

    w.writeheader()
    yield _flush()
    for row in rows:
        w.writerow(row)
        yield _flush()


def to_csv(rows: Iterable[Dict[str, Any]]) -> str:
    return "".join(iter_csv(rows))
