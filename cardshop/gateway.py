"""
Client for the payment gateway's refund endpoint.

The gateway speaks an epay-style merchant API: a form-encoded POST of
``pid``, ``key``, ``trade_no`` and ``money``, answered with JSON whose
``code`` is 1 on success. In front of it sits a bot check that sometimes
returns an HTML interstitial instead of JSON.

`classify_refund_response` turns a raw answer into either the decoded
payload or one of the GatewayError subclasses. It is shared by the
server-side refund call and by the operator-side refund client.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

import httpx

from .config import PAY_TIMEOUT, PAY_VERIFY_URL
from .errors import (
    GatewayChallenge, GatewayError, GatewayMalformedResponse, GatewayRejected,
    GatewayTransportError,
)

log = logging.getLogger(__name__)

CHALLENGE_MARKERS = ("just a moment", "cloudflare")
MAX_BODY_ECHO = 500


def looks_like_challenge(body: str) -> bool:
    lowered = (body or "").lower()
    return any(m in lowered for m in CHALLENGE_MARKERS)


def classify_refund_response(
    body: str, verify_url: Optional[str] = None
) -> Dict[str, Any]:
    verify_url = verify_url or PAY_VERIFY_URL
    if looks_like_challenge(body):
        where = f" at {verify_url}" if verify_url else ""
        raise GatewayChallenge(
            "the payment gateway answered with a bot check; open the "
            f"gateway{where} in a browser, complete the verification, "
            "then retry the refund"
        )
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        raise GatewayMalformedResponse(
            "payment gateway returned a non-JSON response: "
            f"{(body or '')[:MAX_BODY_ECHO]}"
        )
    if not isinstance(payload, dict):
        raise GatewayMalformedResponse(
            "payment gateway returned an unexpected payload: "
            f"{(body or '')[:MAX_BODY_ECHO]}"
        )
    if str(payload.get("code")) != "1":
        msg = payload.get("msg") or "payment gateway returned an error"
        raise GatewayRejected(f"refund failed: {msg}",
                              code=payload.get("code"))
    return payload


class RefundGateway:
    def __init__(
        self,
        url: str,
        pid: str,
        key: str,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = PAY_TIMEOUT,
        verify_url: Optional[str] = None,
    ) -> None:
        self.url = url
        self.pid = pid
        self.key = key
        self.http = http
        self.timeout = timeout
        self.verify_url = verify_url

    def form(self, trade_no: str, money: str) -> Dict[str, str]:
        return {
            "pid": self.pid,
            "key": self.key,
            "trade_no": trade_no,
            "money": money,
        }

    async def _post(self, client: httpx.AsyncClient,
                    data: Dict[str, str]) -> httpx.Response:
        return await client.post(
            self.url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )

    async def refund(self, trade_no: str, money: str) -> Dict[str, Any]:
        """
        POST the refund. No automatic retry: a transport failure surfaces
        as GatewayTransportError for the operator to retry.
        """
        data = self.form(trade_no, money)
        try:
            if self.http is not None:
                r = await self._post(self.http, data)
            else:
                async with httpx.AsyncClient() as client:
                    r = await self._post(client, data)
        except httpx.TransportError as e:
            log.warning("refund %s: transport error: %r", trade_no, e)
            raise GatewayTransportError(
                f"could not reach the payment gateway ({e.__class__.__name__}); "
                "check connectivity and retry"
            ) from e

        try:
            payload = classify_refund_response(r.text, self.verify_url)
        except GatewayError as e:
            log.warning("refund %s: gateway said no (HTTP %s): %s",
                        trade_no, r.status_code, e)
            raise
        log.info("refund %s accepted by gateway", trade_no)
        return payload
