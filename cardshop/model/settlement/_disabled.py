# model/settlement/_disabled.py
from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import InvalidState
from .base import RefundSettlement

_MSG = "refunds are not enabled; set REFUND_MODE to proxy or client"


class DisabledSettlement(RefundSettlement):
    mode = "disabled"

    async def approve(self, db: AsyncSession, order_id: str) -> Dict[str, Any]:
        raise InvalidState(_MSG)

    async def client_params(
        self, db: AsyncSession, order_id: str
    ) -> Dict[str, str]:
        raise InvalidState(_MSG)

    async def confirm(
        self, db: AsyncSession, order_id: str, note: Optional[str] = None
    ) -> Dict[str, Any]:
        raise InvalidState(_MSG)
