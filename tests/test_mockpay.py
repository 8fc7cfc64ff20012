import base64
import hashlib
import hmac
import json

import pytest
from fastapi import HTTPException

from cardshop.mockpay import MockPay, SIGNATURE_HEADER


def test_signature_is_base64_hmac_sha256():
    pay = MockPay(secret="s3cret")
    body = b'{"type": "payment.succeeded"}'
    expected = base64.b64encode(
        hmac.new(b"s3cret", body, hashlib.sha256).digest()
    ).decode()
    assert pay.sign(body) == expected


def test_verify_roundtrip_and_event_fields():
    pay = MockPay(secret="s3cret")
    body = pay.build_event("ORD1", "succeeded", trade_no="T-1")
    event = pay.verify_webhook(body, {SIGNATURE_HEADER: pay.sign(body)})

    assert pay.event_kind(event) == "succeeded"
    assert pay.event_ids(event) == ("ORD1", "T-1")


def test_build_event_generates_trade_no():
    pay = MockPay(secret="s3cret")
    event = json.loads(pay.build_event("ORD1", "failed"))
    assert event["type"] == "payment.failed"
    assert event["trade_no"].startswith("mock_")


@pytest.mark.parametrize("headers", [
    {},
    {SIGNATURE_HEADER: "bogus"},
    {SIGNATURE_HEADER: MockPay(secret="other").sign(b"{}")},
])
def test_bad_signature_rejected(headers):
    with pytest.raises(HTTPException) as exc:
        MockPay(secret="s3cret").verify_webhook(b"{}", headers)
    assert exc.value.status_code == 400


def test_signed_garbage_rejected():
    pay = MockPay(secret="s3cret")
    with pytest.raises(HTTPException) as exc:
        pay.verify_webhook(b"not json", {SIGNATURE_HEADER: pay.sign(b"not json")})
    assert exc.value.detail == "Invalid JSON"


def test_signed_non_utf8_rejected():
    pay = MockPay(secret="s3cret")
    body = b"\xff\xfe\x00"
    with pytest.raises(HTTPException) as exc:
        pay.verify_webhook(body, {SIGNATURE_HEADER: pay.sign(body)})
    assert exc.value.status_code == 400
    assert exc.value.detail == "Invalid JSON"
