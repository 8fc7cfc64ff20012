import httpx
import pytest

from cardshop.errors import (
    GatewayChallenge, GatewayRejected, InvalidState, NotFound,
)
from cardshop.gateway import RefundGateway
from cardshop.model import ledger, settlement
from cardshop.model.db import (
    ORDER_COMPLETED, ORDER_PAID, ORDER_PENDING, ORDER_REFUND_PENDING,
    ORDER_REFUNDED,
)
from cardshop.model.settlement import (
    ClientDelegatedSettlement, DisabledSettlement, ServerSideSettlement,
    new_settlement, reject_refund, request_refund,
)

GATEWAY_URL = "https://pay.example/api.php"


class FakeGateway:
    """Scripted gateway answers; records every refund form posted."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.http = httpx.AsyncClient(
            transport=httpx.MockTransport(self._handle)
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.content.decode())
        return self.responses.pop(0)

    def settlement(self, mode="proxy"):
        gw = RefundGateway(GATEWAY_URL, "1001", "merchant-key",
                           http=self.http, verify_url="https://pay.example/")
        return new_settlement(mode, gateway=gw)


@pytest.fixture
async def gateway():
    fakes = []

    def _make(*responses):
        fake = FakeGateway(*responses)
        fakes.append(fake)
        return fake
    yield _make
    for fake in fakes:
        await fake.http.aclose()


@pytest.fixture
def refund_pending_order(make_product, make_cards, make_order):
    async def _make(**kw):
        pid = await make_product()
        ids = await make_cards(pid, 3)
        order = await make_order(
            pid, status=ORDER_REFUND_PENDING, quantity=2,
            trade_no="T-101", card_ids=ids[:2], total_amount=2599,
            refund_prior_status=ORDER_PAID, **kw,
        )
        return pid, order
    return _make


async def test_proxied_refund_settles_order(db, gateway, refund_pending_order,
                                            stock):
    pid, order = await refund_pending_order()
    fake = gateway(httpx.Response(200, json={"code": 1, "msg": "ok"}))

    done = await fake.settlement().approve(db, order["id"])

    assert done["status"] == ORDER_REFUNDED
    assert done["refunded_at"] is not None
    # sold cards stay with the order
    assert done["released_cards"] == 0
    assert await stock(pid) == {"available": 1, "locked": 0, "sold": 2}
    assert "trade_no=T-101" in fake.calls[0]
    assert "money=25.99" in fake.calls[0]


async def test_challenge_page_leaves_order_pending(db, gateway,
                                                   refund_pending_order):
    pid, order = await refund_pending_order()
    before = await ledger.order_events(db, order["id"])
    fake = gateway(httpx.Response(
        503, text="<title>Just a moment...</title> cloudflare ray id"
    ))

    with pytest.raises(GatewayChallenge) as exc:
        await fake.settlement().approve(db, order["id"])

    assert exc.value.retryable
    detail = await ledger.get_order(db, order["id"])
    assert detail["status"] == ORDER_REFUND_PENDING
    assert detail["refunded_at"] is None
    assert await ledger.order_events(db, order["id"]) == before


async def test_gateway_rejection_leaves_order_pending(db, gateway,
                                                      refund_pending_order):
    pid, order = await refund_pending_order()
    fake = gateway(httpx.Response(200, json={"code": -1, "msg": "too late"}))

    with pytest.raises(GatewayRejected) as exc:
        await fake.settlement().approve(db, order["id"])

    assert "too late" in exc.value.message
    detail = await ledger.get_order(db, order["id"])
    assert detail["status"] == ORDER_REFUND_PENDING


async def test_full_refund_flow_returns_locked_cards(db, gateway,
                                                     make_product, make_cards,
                                                     stock):
    pid = await make_product(price=500)
    await make_cards(pid, 2)
    order = await ledger.create_order(db, pid, 2, "buyer@example.com")
    await ledger.mark_paid(db, order["id"], "T-7")

    requested = await request_refund(db, order["order_no"],
                                     "BUYER@example.com", "changed my mind")
    assert requested["status"] == ORDER_REFUND_PENDING
    assert requested["refund_reason"] == "changed my mind"

    fake = gateway(httpx.Response(200, json={"code": 1}))
    done = await fake.settlement().approve(db, order["id"])

    assert done["status"] == ORDER_REFUNDED
    assert done["released_cards"] == 2
    assert await stock(pid) == {"available": 2, "locked": 0, "sold": 0}
    history = [e["to"] for e in await ledger.order_events(db, order["id"])]
    assert history == [ORDER_PENDING, ORDER_PAID, ORDER_REFUND_PENDING,
                       ORDER_REFUNDED]


async def test_reject_restores_prior_status_without_gateway(
        db, gateway, refund_pending_order):
    pid, order = await refund_pending_order()
    fake = gateway()

    rejected = await reject_refund(db, order["id"], "  ")

    assert rejected["status"] == ORDER_PAID
    assert rejected["rejection_reason"] == "refund rejected by admin"
    assert fake.calls == []

    # refundable again
    again = await request_refund(db, order["order_no"], order["email"])
    assert again["status"] == ORDER_REFUND_PENDING

    events = await ledger.order_events(db, order["id"])
    assert events[0]["note"] == "refund rejected: refund rejected by admin"


async def test_reject_requires_pending_refund(db, make_product, make_order):
    pid = await make_product()
    order = await make_order(pid, status=ORDER_PAID, trade_no="T-1")
    with pytest.raises(InvalidState):
        await reject_refund(db, order["id"], "no")


@pytest.mark.parametrize("status", [ORDER_PENDING, ORDER_COMPLETED,
                                    ORDER_REFUNDED])
async def test_only_paid_orders_are_refundable(db, make_product, make_order,
                                               status):
    pid = await make_product()
    order = await make_order(pid, status=status)
    with pytest.raises(InvalidState):
        await request_refund(db, order["order_no"], order["email"])


async def test_refund_request_checks_email(db, make_product, make_order):
    pid = await make_product()
    order = await make_order(pid, status=ORDER_PAID, trade_no="T-1")
    with pytest.raises(NotFound):
        await request_refund(db, order["order_no"], "someone@else.com")


async def test_approve_needs_trade_number(db, gateway, make_product,
                                          make_order):
    pid = await make_product()
    order = await make_order(pid, status=ORDER_REFUND_PENDING)
    fake = gateway()
    with pytest.raises(InvalidState):
        await fake.settlement().approve(db, order["id"])
    assert fake.calls == []


async def test_client_mode_hands_out_params_and_trusts_confirm(
        db, gateway, refund_pending_order):
    pid, order = await refund_pending_order()
    s = gateway().settlement("client")
    assert isinstance(s, ClientDelegatedSettlement)

    params = await s.client_params(db, order["id"])
    assert params == {
        "api_url": GATEWAY_URL,
        "pid": "1001",
        "key": "merchant-key",
        "trade_no": "T-101",
        "money": "25.99",
    }

    with pytest.raises(InvalidState):
        await s.approve(db, order["id"])

    done = await s.confirm(db, order["id"], "done in browser")
    assert done["status"] == ORDER_REFUNDED
    events = await ledger.order_events(db, order["id"])
    assert events[-1]["note"] == "done in browser"

    # settling twice is a stale transition
    with pytest.raises(InvalidState):
        await s.confirm(db, order["id"])


async def test_proxy_mode_refuses_client_calls(db, gateway,
                                               refund_pending_order):
    pid, order = await refund_pending_order()
    s = gateway().settlement("proxy")
    assert isinstance(s, ServerSideSettlement)
    with pytest.raises(InvalidState):
        await s.client_params(db, order["id"])
    with pytest.raises(InvalidState):
        await s.confirm(db, order["id"])


async def test_disabled_mode(db, refund_pending_order):
    pid, order = await refund_pending_order()
    s = new_settlement("disabled")
    assert isinstance(s, DisabledSettlement)
    for call in (s.approve, s.client_params, s.confirm):
        with pytest.raises(InvalidState):
            await call(db, order["id"])
    # rejection still works without a gateway
    assert (await reject_refund(db, order["id"]))["status"] == ORDER_PAID


def test_new_settlement_requires_gateway_config(monkeypatch):
    monkeypatch.setattr(settlement, "refund_url", lambda: "")
    with pytest.raises(RuntimeError):
        new_settlement("proxy")
    with pytest.raises(RuntimeError):
        new_settlement("client")
    with pytest.raises(RuntimeError):
        new_settlement("bogus")


async def test_settle_can_return_sold_cards(db, refund_pending_order, stock):
    pid, order = await refund_pending_order()

    done = await settlement.settle(db, order["id"], "restocked",
                                   release_sold=True)

    assert done["status"] == ORDER_REFUNDED
    assert done["released_cards"] == 2
    assert await stock(pid) == {"available": 3, "locked": 0, "sold": 0}
