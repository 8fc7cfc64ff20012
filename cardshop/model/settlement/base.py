# model/settlement/base.py
"""
Refund workflow shared by every settlement mode.

request (customer)  paid -> refund_pending, remembering the prior status
reject (admin)      refund_pending -> prior status, no external call
settle              refund_pending -> refunded, locked cards released

Only *how* the gateway refund happens differs between modes; that part
lives behind RefundSettlement.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ...config import REFUND_RELEASE_SOLD
from ...errors import InvalidState, NotFound
from ...helpers import now_ts
from .. import inventory, ledger
from ..db import ORDER_PAID, ORDER_REFUND_PENDING, ORDER_REFUNDED

log = logging.getLogger(__name__)


class RefundSettlement(ABC):
    mode: str = ""

    # server-side approval: gateway call + settle
    @abstractmethod
    async def approve(self, db: AsyncSession, order_id: str) -> Dict[str, Any]:
        ...

    # parameters for a client-performed gateway call
    @abstractmethod
    async def client_params(
        self, db: AsyncSession, order_id: str
    ) -> Dict[str, str]:
        ...

    # client reports the gateway accepted the refund
    @abstractmethod
    async def confirm(
        self, db: AsyncSession, order_id: str, note: Optional[str] = None
    ) -> Dict[str, Any]:
        ...


# ------------------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------------------

async def request_refund(
    db: AsyncSession, order_no: str, email: str, reason: Optional[str] = None
) -> Dict[str, Any]:
    reason = (reason or "").strip() or None
    async with db.begin():
        order = await ledger.load_by_no(db, (order_no or "").strip())
        if order["email"].lower() != (email or "").strip().lower():
            raise NotFound("order not found")
        if order["status"] not in ledger.REFUNDABLE_STATUSES:
            raise InvalidState(
                f"order {order['order_no']} is {order['status']} and cannot "
                f"be refunded"
            )
        order = await ledger.transition(
            db, order, ORDER_REFUND_PENDING,
            f"refund requested: {reason}" if reason else "refund requested",
            refund_reason=reason,
            refund_prior_status=order["status"],
        )
    return ledger.order_view(order)


async def reject_refund(
    db: AsyncSession, order_id: str, reason: Optional[str] = None
) -> Dict[str, Any]:
    """Back to the status held before the request; the reason is kept in
    the order history."""
    reason = (reason or "").strip() or "refund rejected by admin"
    async with db.begin():
        order = await ledger.load(db, order_id)
        if order["status"] != ORDER_REFUND_PENDING:
            raise InvalidState(
                f"order {order['order_no']} has no pending refund"
            )
        prior = order["refund_prior_status"] or ORDER_PAID
        order = await ledger.transition(
            db, order, prior, f"refund rejected: {reason}",
            refund_prior_status=None,
        )
    return {**ledger.order_view(order), "rejection_reason": reason}


async def load_refund_pending(
    db: AsyncSession, order_id: str
) -> Dict[str, Any]:
    async with db.begin():
        order = await ledger.load(db, order_id)
    if order["status"] != ORDER_REFUND_PENDING:
        raise InvalidState(f"order {order['order_no']} has no pending refund")
    if not order["trade_no"]:
        raise InvalidState(
            f"order {order['order_no']} has no gateway trade number; "
            "refund it manually"
        )
    return order


async def settle(
    db: AsyncSession, order_id: str, note: str,
    release_sold: bool = REFUND_RELEASE_SOLD,
) -> Dict[str, Any]:
    """refund_pending -> refunded. Locked cards go back to stock; sold
    cards stay with the order unless `release_sold` is set."""
    async with db.begin():
        order = await ledger.load(db, order_id)
        order = await ledger.transition(db, order, ORDER_REFUNDED, note,
                                        refunded_at=now_ts())
        released = await inventory.release_order(
            db, order_id, include_sold=release_sold
        )
    log.info("order %s refunded, %d cards released", order["order_no"],
             released)
    return {**ledger.order_view(order), "released_cards": released}
