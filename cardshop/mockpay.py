from abc import ABC, abstractmethod
from typing import Optional, Tuple
from fastapi import HTTPException
import uuid
import hmac
import hashlib
import base64
import json
from .config import MOCK_SECRET
from .helpers import now_ts

SIGNATURE_HEADER = "x-mockpay-signature"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (order_no, trade_no)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):

    def __init__(self, secret: str = MOCK_SECRET) -> None:
        self.secret = secret

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, order_no: str, kind: str = "succeeded",
                    trade_no: Optional[str] = None) -> bytes:
        return json.dumps({
            "type": f"payment.{kind}",
            "order_no": order_no,
            "trade_no": trade_no or f"mock_{uuid.uuid4().hex[:16]}",
            "created_at": int(now_ts()),
        }).encode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("order_no", ""),
                event.get("trade_no")
        )
