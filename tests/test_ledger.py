import pytest
from sqlalchemy import update

from cardshop.errors import InsufficientStock, InvalidState, NotFound, ValidationError
from cardshop.helpers import now_ts
from cardshop.model import ledger
from cardshop.model.db import (
    ORDER_CANCELLED, ORDER_COMPLETED, ORDER_PAID, ORDER_PENDING,
    ORDER_REFUND_PENDING, ORDER_REFUNDED, ORDER_STATUSES, TERMINAL_STATUSES,
)


def test_terminal_states_have_no_exits():
    for src in TERMINAL_STATUSES:
        for dst in ORDER_STATUSES:
            assert not ledger.can_transition(src, dst)
    assert ledger.is_terminal(ORDER_REFUNDED)
    assert not ledger.is_terminal(ORDER_REFUND_PENDING)


def test_transition_graph_is_acyclic_apart_from_rejection():
    assert ledger.can_transition(ORDER_PENDING, ORDER_PAID)
    assert ledger.can_transition(ORDER_PAID, ORDER_REFUND_PENDING)
    assert ledger.can_transition(ORDER_REFUND_PENDING, ORDER_PAID)
    assert not ledger.can_transition(ORDER_PAID, ORDER_PENDING)
    assert not ledger.can_transition(ORDER_PENDING, ORDER_REFUNDED)


@pytest.mark.parametrize("status", TERMINAL_STATUSES)
async def test_transition_out_of_terminal_state_fails(db, make_product,
                                                      make_order, status):
    pid = await make_product()
    order = await make_order(pid, status=status)
    for dst in ORDER_STATUSES:
        with pytest.raises(InvalidState):
            async with db.begin():
                row = await ledger.load(db, order["id"])
                await ledger.transition(db, row, dst)
    detail = await ledger.get_order(db, order["id"])
    assert detail["status"] == status
    assert detail["events"] == []


async def test_stale_status_loses(db, make_product, make_order):
    pid = await make_product()
    order = await make_order(pid, status=ORDER_PAID, trade_no="T1")

    async with db.begin():
        seen = await ledger.load(db, order["id"])
    async with db.begin():
        await ledger.transition(db, seen, ORDER_COMPLETED)

    # second writer still holds the paid snapshot
    with pytest.raises(InvalidState):
        async with db.begin():
            await ledger.transition(db, seen, ORDER_REFUND_PENDING)

    detail = await ledger.get_order(db, order["id"])
    assert detail["status"] == ORDER_COMPLETED
    assert [(e["from"], e["to"]) for e in detail["events"]] == [
        (ORDER_PAID, ORDER_COMPLETED)
    ]


async def test_create_order_locks_cards(db, make_product, make_cards, stock):
    pid = await make_product(price=250)
    await make_cards(pid, 3)

    order = await ledger.create_order(db, pid, 2, " Buyer@Example.com ")

    assert order["status"] == ORDER_PENDING
    assert order["total_amount"] == 500
    assert order["email"] == "Buyer@Example.com"
    assert order["order_no"].startswith("ORD")
    assert await stock(pid) == {"available": 1, "locked": 2, "sold": 0}

    events = await ledger.order_events(db, order["id"])
    assert events[0]["to"] == ORDER_PENDING


async def test_create_order_validation(db, make_product, make_cards):
    pid = await make_product(min_quantity=2, max_quantity=3)
    await make_cards(pid, 5)

    with pytest.raises(ValidationError) as exc:
        await ledger.create_order(db, pid, 2, "not-an-email")
    assert "email" in exc.value.fields

    with pytest.raises(ValidationError) as exc:
        await ledger.create_order(db, pid, 4, "a@b.co")
    assert "quantity" in exc.value.fields

    with pytest.raises(NotFound):
        await ledger.create_order(db, "missing", 2, "a@b.co")

    hidden = await make_product(is_active=False)
    with pytest.raises(NotFound):
        await ledger.create_order(db, hidden, 1, "a@b.co")


async def test_create_order_out_of_stock_writes_nothing(db, make_product,
                                                        make_cards, stock):
    pid = await make_product()
    await make_cards(pid, 1)

    with pytest.raises(InsufficientStock):
        await ledger.create_order(db, pid, 2, "a@b.co")

    listing = await ledger.list_orders(db)
    assert listing["total"] == 0
    assert await stock(pid) == {"available": 1, "locked": 0, "sold": 0}


async def test_stale_pending_orders_expire_at_checkout(db, make_product,
                                                       make_cards, stock):
    pid = await make_product()
    await make_cards(pid, 1)
    first = await ledger.create_order(db, pid, 1, "a@b.co")

    async with db.begin():
        await db.execute(
            update(ledger.orders).where(ledger.orders.c.id == first["id"])
            .values(created_at=now_ts() - 3600)
        )

    second = await ledger.create_order(db, pid, 1, "c@d.co",
                                       lock_ttl_seconds=900)

    assert (await ledger.get_order(db, first["id"]))["status"] == \
        ORDER_CANCELLED
    assert second["status"] == ORDER_PENDING
    assert await stock(pid) == {"available": 0, "locked": 1, "sold": 0}


async def test_mark_paid_is_idempotent_per_trade_no(db, make_product,
                                                    make_order):
    pid = await make_product()
    order = await make_order(pid)

    paid = await ledger.mark_paid(db, order["id"], "T-1")
    assert paid["status"] == ORDER_PAID
    assert paid["trade_no"] == "T-1"
    assert paid["paid_at"] is not None

    again = await ledger.mark_paid(db, order["id"], "T-1")
    assert again["status"] == ORDER_PAID
    assert len(await ledger.order_events(db, order["id"])) == 1

    with pytest.raises(InvalidState):
        await ledger.mark_paid(db, order["id"], "T-2")


async def test_late_payment_revives_cancelled_order(db, make_product,
                                                    make_cards, stock):
    pid = await make_product()
    await make_cards(pid, 1)
    order = await ledger.create_order(db, pid, 1, "a@b.co")
    await ledger.cancel_order(db, order["id"], "expired")

    paid = await ledger.mark_paid(db, order["id"], "T-late")
    assert paid["status"] == ORDER_PAID
    assert paid["trade_no"] == "T-late"
    # cards went back to stock on cancel and are not re-locked here
    assert await stock(pid) == {"available": 1, "locked": 0, "sold": 0}

    history = await ledger.order_events(db, order["id"])
    assert history[-1]["from"] == ORDER_CANCELLED
    assert history[-1]["to"] == ORDER_PAID
    assert history[-1]["note"] == "payment received after cancellation"

    # replay is a no-op
    again = await ledger.mark_paid(db, order["id"], "T-late")
    assert again["status"] == ORDER_PAID
    assert len(await ledger.order_events(db, order["id"])) == len(history)


async def test_cancelled_stays_terminal_for_plain_transitions(
        db, make_product, make_order):
    pid = await make_product()
    order = await make_order(pid, status=ORDER_CANCELLED)
    with pytest.raises(InvalidState):
        async with db.begin():
            row = await ledger.load(db, order["id"])
            await ledger.transition(db, row, ORDER_PAID)


async def test_cancel_releases_locked_cards(db, make_product, make_cards,
                                            stock):
    pid = await make_product()
    await make_cards(pid, 2)
    order = await ledger.create_order(db, pid, 2, "a@b.co")

    cancelled = await ledger.cancel_order(db, order["id"])
    assert cancelled["status"] == ORDER_CANCELLED
    assert await stock(pid) == {"available": 2, "locked": 0, "sold": 0}

    with pytest.raises(InvalidState):
        await ledger.cancel_order(db, order["id"])


async def test_find_order_checks_email(db, make_product, make_order):
    pid = await make_product()
    order = await make_order(pid, email="Owner@Example.com")

    found = await ledger.find_order(db, order["order_no"],
                                    "owner@example.com")
    assert found["id"] == order["id"]
    assert found["cards"] == []

    with pytest.raises(NotFound):
        await ledger.find_order(db, order["order_no"], "other@example.com")
    with pytest.raises(NotFound):
        await ledger.find_order(db, "ORD-NOPE", "owner@example.com")


async def test_list_orders_filters_and_pages(db, make_product, make_order):
    pid = await make_product()
    await make_order(pid, status=ORDER_PAID, email="alice@example.com")
    await make_order(pid, status=ORDER_PAID, email="bob@example.com")
    await make_order(pid, status=ORDER_COMPLETED, email="alice@example.com")

    paid = await ledger.list_orders(db, status=ORDER_PAID)
    assert paid["total"] == 2

    alice = await ledger.list_orders(db, q="ALICE")
    assert alice["total"] == 2

    page = await ledger.list_orders(db, page=2, page_size=2)
    assert page["total"] == 3
    assert len(page["items"]) == 1

    with pytest.raises(ValidationError):
        await ledger.list_orders(db, status="shipped")
