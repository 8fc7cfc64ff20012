# model/ledger.py
"""
Order ledger and the order status state machine.

    pending ----> paid ----> completed
       |  \                    ^
       |   `-------------------'          (manual completion)
       |          |
       v          v
   cancelled   refund_pending ----> refunded
                  |
                  `--> status before the request   (rejection)

completed, refunded and cancelled are terminal. The one way out of cancelled
is a payment that lands after lock expiry or a customer cancel: mark_paid
revives the order to paid so the money is on record and refundable.

Every status change is a compare-and-set UPDATE (``WHERE status = <seen>``):
if two transitions race on one order, exactly one matches the row and the
other fails with InvalidState. Each change appends an order_events row.
"""

from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidState, NotFound, ValidationError
from ..helpers import is_valid_email, new_order_no, now_ts, to_iso
from . import inventory
from .db import (
    Order, OrderEvent, Product,
    ORDER_PENDING, ORDER_PAID, ORDER_COMPLETED, ORDER_REFUND_PENDING,
    ORDER_REFUNDED, ORDER_CANCELLED, ORDER_STATUSES, TERMINAL_STATUSES,
)

log = logging.getLogger(__name__)

orders = Order.__table__
events = OrderEvent.__table__

TRANSITIONS = {
    ORDER_PENDING: {ORDER_PAID, ORDER_COMPLETED, ORDER_CANCELLED},
    ORDER_PAID: {ORDER_COMPLETED, ORDER_REFUND_PENDING},
    # rejection goes back to whatever refund_prior_status holds
    ORDER_REFUND_PENDING: {ORDER_REFUNDED, ORDER_PAID},
    ORDER_COMPLETED: set(),
    ORDER_REFUNDED: set(),
    ORDER_CANCELLED: set(),
}

REFUNDABLE_STATUSES = (ORDER_PAID,)
COMPLETABLE_STATUSES = (ORDER_PENDING, ORDER_PAID)


def can_transition(src: str, dst: str) -> bool:
    return dst in TRANSITIONS.get(src, set())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def order_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "order_no": row["order_no"],
        "product_id": row["product_id"],
        "product_name": row["product_name"],
        "quantity": row["quantity"],
        "total_amount": row["total_amount"],
        "payment_method": row["payment_method"],
        "email": row["email"],
        "status": row["status"],
        "refund_reason": row["refund_reason"],
        "trade_no": row["trade_no"],
        "created_at": to_iso(row["created_at"]),
        "paid_at": to_iso(row["paid_at"]),
        "completed_at": to_iso(row["completed_at"]),
        "refunded_at": to_iso(row["refunded_at"]),
    }


# ------------------------------------------------------------------------------
# Un-transacted building blocks (caller owns the transaction)
# ------------------------------------------------------------------------------

async def load(db: AsyncSession, order_id: str) -> Dict[str, Any]:
    row = (await db.execute(
        select(orders).where(orders.c.id == order_id)
    )).mappings().first()
    if row is None:
        raise NotFound("order not found")
    return dict(row)


async def load_by_no(db: AsyncSession, order_no: str) -> Dict[str, Any]:
    row = (await db.execute(
        select(orders).where(orders.c.order_no == order_no)
    )).mappings().first()
    if row is None:
        raise NotFound("order not found")
    return dict(row)


async def record_event(
    db: AsyncSession, order_id: str, from_status: Optional[str],
    to_status: str, note: Optional[str] = None,
) -> None:
    await db.execute(insert(events).values(
        order_id=order_id, from_status=from_status, to_status=to_status,
        note=note, created_at=now_ts(),
    ))


async def transition(
    db: AsyncSession,
    order: Dict[str, Any],
    to_status: str,
    note: Optional[str] = None,
    **values: Any,
) -> Dict[str, Any]:
    """
    Move `order` (as last read) to `to_status`. Fails with InvalidState when
    the move is illegal or the stored status changed since it was read.
    """
    src = order["status"]
    if not can_transition(src, to_status):
        raise InvalidState(
            f"order {order['order_no']} cannot go from {src} to {to_status}"
        )
    return await _set_status(db, order, to_status, note, **values)


async def _set_status(
    db: AsyncSession,
    order: Dict[str, Any],
    to_status: str,
    note: Optional[str] = None,
    **values: Any,
) -> Dict[str, Any]:
    src = order["status"]
    res = await db.execute(
        update(orders)
        .where(orders.c.id == order["id"], orders.c.status == src)
        .values(status=to_status, **values)
    )
    if (res.rowcount or 0) != 1:
        raise InvalidState(
            f"order {order['order_no']} was modified concurrently; "
            f"reload and retry"
        )
    await record_event(db, order["id"], src, to_status, note)
    log.info("order %s: %s -> %s", order["order_no"], src, to_status)
    return {**order, "status": to_status, **values}


async def _expire_pending(
    db: AsyncSession, ttl_seconds: int, product_id: Optional[str] = None
) -> int:
    cutoff = now_ts() - ttl_seconds
    conds = [orders.c.status == ORDER_PENDING, orders.c.created_at < cutoff]
    if product_id is not None:
        conds.append(orders.c.product_id == product_id)
    stale = (await db.execute(select(orders).where(*conds))).mappings().all()

    n = 0
    for row in stale:
        try:
            await transition(db, dict(row), ORDER_CANCELLED, "expired")
        except InvalidState:
            # paid or cancelled in the meantime
            continue
        await inventory.release_order(db, row["id"])
        n += 1
    return n


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_order(
    db: AsyncSession,
    product_id: str,
    quantity: int,
    email: str,
    payment_method: str = "epay",
    lock_ttl_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Checkout: create a pending order and lock its cards. Raises
    ValidationError, NotFound or InsufficientStock; nothing is written on
    failure.
    """
    email = (email or "").strip()
    if not is_valid_email(email):
        raise ValidationError(
            "a valid contact email is required",
            fields={"email": "must be a valid email address"},
        )

    async with db.begin():
        product = (await db.execute(
            select(Product.__table__).where(Product.id == product_id)
        )).mappings().first()
        if product is None or not product["is_active"]:
            raise NotFound("product not found")

        lo, hi = product["min_quantity"], product["max_quantity"]
        if quantity < lo or quantity > hi:
            raise ValidationError(
                f"quantity must be between {lo} and {hi}",
                fields={"quantity": f"between {lo} and {hi}"},
            )

        if lock_ttl_seconds:
            await _expire_pending(db, lock_ttl_seconds, product_id)

        now = now_ts()
        order = {
            "id": uuid.uuid4().hex,
            "order_no": new_order_no(now),
            "product_id": product_id,
            "product_name": product["name"],
            "quantity": quantity,
            "total_amount": product["price"] * quantity,
            "payment_method": payment_method,
            "email": email,
            "status": ORDER_PENDING,
            "refund_reason": None,
            "refund_prior_status": None,
            "trade_no": None,
            "created_at": now,
            "paid_at": None,
            "completed_at": None,
            "refunded_at": None,
        }
        await db.execute(insert(orders).values(**order))
        await record_event(db, order["id"], None, ORDER_PENDING, "checkout")
        await inventory.lock(db, product_id, quantity, order["id"])

    log.info("order %s created: %s x%d", order["order_no"], product_id,
             quantity)
    return order_view(order)


async def get_order(db: AsyncSession, order_id: str) -> Dict[str, Any]:
    async with db.begin():
        order = await load(db, order_id)
        history = await _events(db, order_id)
        cards = []
        if order["status"] == ORDER_COMPLETED:
            cards = await inventory.cards_for_order(db, order_id)
    return {**order_view(order), "events": history, "cards": cards}


async def find_order(
    db: AsyncSession, order_no: str, email: str
) -> Dict[str, Any]:
    """Customer lookup: order number plus the contact email used."""
    async with db.begin():
        order = await load_by_no(db, (order_no or "").strip())
        if order["email"].lower() != (email or "").strip().lower():
            raise NotFound("order not found")
        cards = []
        if order["status"] == ORDER_COMPLETED:
            cards = await inventory.cards_for_order(db, order["id"])
    return {**order_view(order), "cards": cards}


async def list_orders(
    db: AsyncSession,
    status: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Dict[str, Any]:
    if status is not None and status not in ORDER_STATUSES:
        raise ValidationError("invalid order status",
                              fields={"status": f"one of {ORDER_STATUSES}"})
    page = max(1, page)
    page_size = max(1, min(page_size, 200))

    conds = filter_conditions(status, q)
    async with db.begin():
        total = (await db.execute(
            select(func.count()).select_from(orders).where(*conds)
        )).scalar_one()
        rows = (await db.execute(
            select(orders).where(*conds)
            .order_by(orders.c.created_at.desc())
            .limit(page_size).offset((page - 1) * page_size)
        )).mappings().all()
    return {
        "items": [order_view(r) for r in rows],
        "total": int(total),
        "page": page,
        "page_size": page_size,
    }


def filter_conditions(status: Optional[str], q: Optional[str]) -> list:
    conds = []
    if status:
        conds.append(orders.c.status == status)
    if q and q.strip():
        like = f"%{q.strip()}%"
        conds.append(or_(
            orders.c.order_no.ilike(like),
            orders.c.email.ilike(like),
            orders.c.product_name.ilike(like),
        ))
    return conds


async def mark_paid(
    db: AsyncSession, order_id: str, trade_no: str
) -> Dict[str, Any]:
    """
    pending -> paid. A replay for an order already paid with the same
    trade number returns the order unchanged.

    A payment for a cancelled order (lock expired or customer cancel while
    the payment was in flight) revives it to paid. Its cards were released,
    so fulfilment has to claim stock again.
    """
    async with db.begin():
        order = await load(db, order_id)
        if order["status"] != ORDER_PENDING and order["trade_no"] == trade_no:
            return order_view(order)
        if order["status"] == ORDER_CANCELLED:
            log.warning("order %s: payment %s arrived after cancellation",
                        order["order_no"], trade_no)
            order = await _set_status(
                db, order, ORDER_PAID, "payment received after cancellation",
                paid_at=now_ts(), trade_no=trade_no,
            )
        else:
            order = await transition(db, order, ORDER_PAID,
                                     "payment received",
                                     paid_at=now_ts(), trade_no=trade_no)
    return order_view(order)


async def cancel_order(
    db: AsyncSession, order_id: str, note: str = "cancelled"
) -> Dict[str, Any]:
    async with db.begin():
        order = await load(db, order_id)
        order = await transition(db, order, ORDER_CANCELLED, note)
        released = await inventory.release_order(db, order_id)
    log.info("order %s cancelled, %d cards released", order["order_no"],
             released)
    return order_view(order)


async def expire_pending(
    db: AsyncSession, ttl_seconds: int, product_id: Optional[str] = None
) -> int:
    async with db.begin():
        n = await _expire_pending(db, ttl_seconds, product_id)
    if n:
        log.info("expired %d pending orders", n)
    return n


async def _events(db: AsyncSession, order_id: str) -> List[Dict[str, Any]]:
    rows = (await db.execute(
        select(events).where(events.c.order_id == order_id)
        .order_by(events.c.id)
    )).mappings().all()
    return [{
        "from": r["from_status"],
        "to": r["to_status"],
        "note": r["note"],
        "at": to_iso(r["created_at"]),
    } for r in rows]


async def order_events(
    db: AsyncSession, order_id: str
) -> List[Dict[str, Any]]:
    async with db.begin():
        await load(db, order_id)
        return await _events(db, order_id)


async def get_order_by_no(db: AsyncSession, order_no: str) -> Dict[str, Any]:
    async with db.begin():
        order = await load_by_no(db, (order_no or "").strip())
    return order_view(order)
