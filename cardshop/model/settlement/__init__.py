# model/settlement/__init__.py
from typing import Optional

import httpx

from ...config import PAY_KEY, PAY_PID, PAY_VERIFY_URL, REFUND_MODE, refund_url
from ...gateway import RefundGateway
from .base import RefundSettlement, reject_refund, request_refund, settle
from ._direct import ClientDelegatedSettlement
from ._disabled import DisabledSettlement
from ._proxied import ServerSideSettlement

MODES = ("proxy", "client", "disabled")


# Factory keeps server.py free of per-request mode branching:
def new_settlement(mode: Optional[str] = None, *,
                   gateway: Optional[RefundGateway] = None,
                   http: Optional[httpx.AsyncClient] = None
                   ) -> RefundSettlement:
    mode = (mode or REFUND_MODE).lower()
    if mode == "disabled":
        return DisabledSettlement()

    if mode not in MODES:
        raise RuntimeError(f"unknown REFUND_MODE {mode!r}; one of {MODES}")

    url = refund_url()
    if gateway is None and not (url and PAY_PID and PAY_KEY):
        raise RuntimeError(
            f"REFUND_MODE={mode} requires PAY_API_URL (or PAY_REFUND_URL), "
            "PAY_PID and PAY_KEY"
        )

    if mode == "proxy":
        return ServerSideSettlement(
            gateway or RefundGateway(url, PAY_PID, PAY_KEY, http=http,
                                     verify_url=PAY_VERIFY_URL)
        )
    if gateway is not None:
        return ClientDelegatedSettlement(gateway.url, gateway.pid,
                                         gateway.key)
    return ClientDelegatedSettlement(url, PAY_PID, PAY_KEY)


__all__ = [
    "RefundSettlement", "ServerSideSettlement", "ClientDelegatedSettlement",
    "DisabledSettlement", "new_settlement", "request_refund",
    "reject_refund", "settle", "MODES",
]
