# model/settlement/_proxied.py
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import InvalidState
from ...gateway import RefundGateway
from ...helpers import format_money
from .base import RefundSettlement, load_refund_pending, settle

log = logging.getLogger(__name__)


class ServerSideSettlement(RefundSettlement):
    """The server calls the gateway itself with the stored merchant key."""
    mode = "proxy"

    def __init__(self, gateway: RefundGateway) -> None:
        self.gateway = gateway

    async def approve(self, db: AsyncSession, order_id: str) -> Dict[str, Any]:
        order = await load_refund_pending(db, order_id)

        # no DB transaction is held across the HTTP call
        await self.gateway.refund(order["trade_no"],
                                  format_money(order["total_amount"]))
        try:
            return await settle(db, order_id, "refund approved (server)")
        except InvalidState:
            log.error(
                "order %s: gateway refunded trade %s but the ledger update "
                "lost to a concurrent change; reconcile by hand",
                order["order_no"], order["trade_no"],
            )
            raise

    async def client_params(
        self, db: AsyncSession, order_id: str
    ) -> Dict[str, str]:
        raise InvalidState("client refund mode is not enabled")

    async def confirm(
        self, db: AsyncSession, order_id: str, note: Optional[str] = None
    ) -> Dict[str, Any]:
        raise InvalidState("client refund mode is not enabled")
