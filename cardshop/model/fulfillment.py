# model/fulfillment.py
from __future__ import annotations
import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidState
from ..helpers import now_ts
from . import inventory, ledger
from .db import ORDER_COMPLETED

log = logging.getLogger(__name__)


async def complete_order(
    db: AsyncSession, order_id: str, note: str = "cards delivered"
) -> Dict[str, Any]:
    """
    pending/paid -> completed, allocating the order's cards in the same
    transaction. On InsufficientStock nothing changes: the status update
    and any claimed cards roll back together.
    """
    async with db.begin():
        order = await ledger.load(db, order_id)
        if order["status"] not in ledger.COMPLETABLE_STATUSES:
            raise InvalidState(
                f"order {order['order_no']} is {order['status']} and cannot "
                f"be completed"
            )
        order = await ledger.transition(db, order, ORDER_COMPLETED, note,
                                        completed_at=now_ts())
        card_ids = await inventory.allocate(
            db, order["product_id"], order["quantity"], order_id
        )
        secrets = await inventory.cards_for_order(db, order_id)

    log.info("order %s completed with cards %s", order["order_no"], card_ids)
    return {**ledger.order_view(order), "cards": secrets}
