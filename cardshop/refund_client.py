#!/usr/bin/env python3
"""
cardshop refund client (async)

Runs a client-mode refund from the operator's machine, where the payment
gateway's bot check lets requests through:
  1) POST /admin/login                                  (session cookie)
  2) POST /api/admin/orders/{id}/refund/client-params   -> gateway params
  3) POST the refund form to the gateway, classify the answer
  4) POST /api/admin/orders/{id}/refund/confirm         (only on success)

Usage:
  python -m cardshop.refund_client --base http://localhost:8000 \
                                   --order 3f2a... --user admin

Notes:
- The server must run with REFUND_MODE=client.
- On a bot check, open the gateway in a browser, pass it, and run again.
"""

import argparse
import asyncio
import getpass
import sys
from typing import Any, Dict, Optional

import httpx

from .errors import GatewayError, GatewayTransportError
from .gateway import classify_refund_response


class RefundClientError(Exception):
    pass


def _result(r: httpx.Response, step: str) -> Dict[str, Any]:
    try:
        jo = r.json()
    except ValueError:
        raise RefundClientError(f"{step}: HTTP {r.status_code}: {r.text[:200]}")
    if r.status_code >= 400 or not jo.get("success", False):
        msg = jo.get("message") or jo.get("detail") or r.text[:200]
        raise RefundClientError(f"{step}: {msg}")
    return jo.get("data") or {}


async def login(client: httpx.AsyncClient, base: str, user: str,
                password: str) -> None:
    r = await client.post(f"{base}/admin/login",
                          data={"username": user, "password": password})
    _result(r, "login")


async def fetch_params(client: httpx.AsyncClient, base: str,
                       order_id: str) -> Dict[str, str]:
    r = await client.post(
        f"{base}/api/admin/orders/{order_id}/refund/client-params"
    )
    return _result(r, "client-params")


async def call_gateway(client: httpx.AsyncClient,
                       params: Dict[str, str],
                       verify_url: Optional[str] = None) -> Dict[str, Any]:
    form = {k: params[k] for k in ("pid", "key", "trade_no", "money")}
    try:
        r = await client.post(params["api_url"], data=form,
                              headers={"Accept": "application/json"})
    except httpx.TransportError as e:
        raise GatewayTransportError(
            f"could not reach the payment gateway ({e.__class__.__name__})"
        ) from e
    return classify_refund_response(r.text, verify_url)


async def confirm(client: httpx.AsyncClient, base: str, order_id: str,
                  note: str) -> Dict[str, Any]:
    r = await client.post(
        f"{base}/api/admin/orders/{order_id}/refund/confirm",
        json={"note": note},
    )
    return _result(r, "confirm")


async def run_refund(
    base: str,
    order_id: str,
    user: str,
    password: str,
    verify_url: Optional[str] = None,
    timeout: float = 15.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    base = base.rstrip("/")
    async with httpx.AsyncClient(
        timeout=timeout, transport=transport,
        headers={"User-Agent": "cardshop-refund/1.0"},
    ) as client:
        await login(client, base, user, password)
        params = await fetch_params(client, base, order_id)
        payload = await call_gateway(client, params, verify_url)
        note = f"refund confirmed by client (trade {params['trade_no']})"
        if payload.get("msg"):
            note += f": {payload['msg']}"
        return await confirm(client, base, order_id, note)


def main():
    ap = argparse.ArgumentParser(description="cardshop refund client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--order", required=True,
                    help="Order id with a pending refund")
    ap.add_argument("--user", default="admin", help="Admin username")
    ap.add_argument("--password", default=None,
                    help="Admin password (prompted when omitted)")
    ap.add_argument("--verify-url", default=None,
                    help="Gateway page to open when a bot check shows up")
    ap.add_argument("--timeout", type=float, default=15.0,
                    help="Per-request timeout in seconds")
    args = ap.parse_args()

    password = args.password or getpass.getpass("admin password: ")
    try:
        order = asyncio.run(run_refund(
            base=args.base,
            order_id=args.order,
            user=args.user,
            password=password,
            verify_url=args.verify_url,
            timeout=args.timeout,
        ))
    except GatewayError as e:
        print(f"gateway: {e.message}", file=sys.stderr)
        if e.retryable:
            print("this can be retried", file=sys.stderr)
        sys.exit(2)
    except (RefundClientError, httpx.HTTPError) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    print(f"order {order['order_no']} refunded "
          f"({order.get('released_cards', 0)} cards released)")


if __name__ == "__main__":
    main()
