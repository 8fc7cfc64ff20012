# model/inventory.py
"""
Card inventory: redeemable license keys per product.

Lifecycle of a card:
- available -> locked   (checkout reserves cards for a pending order)
- locked    -> sold     (fulfillment; the order owns the card from now on)
- available -> sold     (fulfillment without a prior lock)
- locked    -> available (cancellation / refund)
- sold      -> available (only through an explicit release)

The lock/allocate/release/count functions run inside the caller's
transaction so they can be combined with an order status update; they never
commit. The admin helpers at the bottom open their own transaction.
"""

from __future__ import annotations
import logging
from typing import Dict, Iterable, List, Optional, Any

from sqlalchemy import bindparam, delete, func, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStock, InvalidState, NotFound, ValidationError
from ..helpers import now_ts, to_iso
from .db import (
    Card, Order, Product,
    CARD_AVAILABLE, CARD_LOCKED, CARD_SOLD, CARD_STATUSES,
)

log = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


# ------------------------------------------------------------------------------
# Counting (stock is always derived from card rows)
# ------------------------------------------------------------------------------

async def available_count(db: AsyncSession, product_id: str) -> int:
    n = (await db.execute(
        select(func.count(Card.id)).where(
            Card.product_id == product_id,
            Card.status == CARD_AVAILABLE,
        )
    )).scalar_one()
    return int(n)


async def stock_counts(
    db: AsyncSession, product_ids: Iterable[str]
) -> Dict[str, Dict[str, int]]:
    """
    {product_id: {"available": n, "locked": n, "sold": n}} for every id
    given, zero-filled.
    """
    ids = list(dict.fromkeys(product_ids))
    out = {pid: {s: 0 for s in CARD_STATUSES} for pid in ids}
    if not ids:
        return out

    stmt = text("""
        SELECT product_id, status, COUNT(*) AS n
        FROM cards
        WHERE product_id IN :ids
        GROUP BY product_id, status
    """).bindparams(bindparam("ids", expanding=True))
    rows = (await db.execute(stmt, {"ids": ids})).mappings().all()
    for r in rows:
        if r["status"] in out[r["product_id"]]:
            out[r["product_id"]][r["status"]] = int(r["n"])
    return out


# ------------------------------------------------------------------------------
# Claiming
# ------------------------------------------------------------------------------

def _pick_available(product_id: str, n: int):
    # oldest first; on PostgreSQL rows being claimed by a concurrent
    # transaction are skipped rather than waited for
    return (
        select(Card.id)
        .where(Card.product_id == product_id, Card.status == CARD_AVAILABLE)
        .order_by(Card.id)
        .limit(n)
        .with_for_update(skip_locked=True)
    )


async def _claim(
    db: AsyncSession, product_id: str, n: int, order_id: str,
    to_status: str, now: float,
) -> List[int]:
    # single conditional UPDATE; the status re-check keeps two writers
    # from claiming the same row
    res = await db.execute(
        update(Card)
        .where(
            Card.id.in_(_pick_available(product_id, n)),
            Card.status == CARD_AVAILABLE,
        )
        .values(status=to_status, order_id=order_id, updated_at=now)
        .returning(Card.id)
        .execution_options(**_NO_SYNC)
    )
    return [int(x) for x in res.scalars().all()]


async def lock(
    db: AsyncSession, product_id: str, quantity: int, order_id: str
) -> List[int]:
    """
    Reserve exactly `quantity` available cards for a pending order.
    Raises InsufficientStock (and leaves the rollback to the caller) when
    fewer are available.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive",
                              fields={"quantity": "must be positive"})
    claimed = await _claim(db, product_id, quantity, order_id, CARD_LOCKED,
                           now_ts())
    if len(claimed) < quantity:
        raise InsufficientStock(product_id, quantity, len(claimed))
    return claimed


async def allocate(
    db: AsyncSession, product_id: str, quantity: int, order_id: str
) -> List[int]:
    """
    Mark exactly `quantity` cards sold to `order_id`.

    Cards already locked by the order are converted first, the rest are
    claimed from available stock. All or nothing: on shortfall
    InsufficientStock is raised and the caller's transaction must roll back.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive",
                              fields={"quantity": "must be positive"})
    now = now_ts()

    res = await db.execute(
        update(Card)
        .where(
            Card.order_id == order_id,
            Card.product_id == product_id,
            Card.status == CARD_LOCKED,
        )
        .values(status=CARD_SOLD, updated_at=now)
        .returning(Card.id)
        .execution_options(**_NO_SYNC)
    )
    sold = [int(x) for x in res.scalars().all()]

    missing = quantity - len(sold)
    if missing > 0:
        sold.extend(
            await _claim(db, product_id, missing, order_id, CARD_SOLD, now)
        )

    if len(sold) < quantity:
        raise InsufficientStock(product_id, quantity, len(sold))
    if len(sold) > quantity:
        # more locks than ordered units; never expected
        raise InvalidState(
            f"order {order_id} holds {len(sold)} cards for quantity "
            f"{quantity}"
        )
    return sorted(sold)


async def release(db: AsyncSession, card_ids: Iterable[int]) -> int:
    """
    Return cards to available stock and detach them from their order.
    Already-available cards are left alone. Returns the number changed.
    """
    ids = [int(i) for i in card_ids]
    if not ids:
        return 0
    res = await db.execute(
        update(Card)
        .where(Card.id.in_(ids), Card.status.in_((CARD_LOCKED, CARD_SOLD)))
        .values(status=CARD_AVAILABLE, order_id=None, updated_at=now_ts())
        .execution_options(**_NO_SYNC)
    )
    return int(res.rowcount or 0)


async def release_order(
    db: AsyncSession, order_id: str, include_sold: bool = False
) -> int:
    statuses = (CARD_LOCKED, CARD_SOLD) if include_sold else (CARD_LOCKED,)
    ids = (await db.execute(
        select(Card.id).where(
            Card.order_id == order_id, Card.status.in_(statuses)
        )
    )).scalars().all()
    return await release(db, ids)


async def cards_for_order(db: AsyncSession, order_id: str) -> List[str]:
    rows = (await db.execute(
        select(Card.secret)
        .where(Card.order_id == order_id, Card.status == CARD_SOLD)
        .order_by(Card.id)
    )).scalars().all()
    return list(rows)


# ------------------------------------------------------------------------------
# Admin helpers (own transaction)
# ------------------------------------------------------------------------------

def parse_secrets(raw: str) -> List[str]:
    # one card per line; blank lines dropped
    return [line.strip() for line in (raw or "").splitlines() if line.strip()]


async def import_cards(
    db: AsyncSession, product_id: str, raw: str, dedupe: bool = True
) -> Dict[str, int]:
    secrets = parse_secrets(raw)
    if not secrets:
        raise ValidationError("no cards to import",
                              fields={"cards": "enter one card per line"})

    async with db.begin():
        if await db.get(Product, product_id) is None:
            raise NotFound("product not found")

        skipped = 0
        if dedupe:
            unique = list(dict.fromkeys(secrets))
            skipped = len(secrets) - len(unique)
            existing = set((await db.execute(
                select(Card.secret).where(
                    Card.product_id == product_id,
                    Card.secret.in_(unique),
                )
            )).scalars().all())
            secrets = [s for s in unique if s not in existing]
            skipped += len(existing)

        if secrets:
            now = now_ts()
            await db.execute(insert(Card), [
                {"product_id": product_id, "secret": s,
                 "status": CARD_AVAILABLE, "created_at": now}
                for s in secrets
            ])

    log.info("imported %d cards for product %s (%d skipped)",
             len(secrets), product_id, skipped)
    return {"imported": len(secrets), "skipped": skipped}


async def list_cards(
    db: AsyncSession,
    product_id: Optional[str] = None,
    q: Optional[str] = None,
    status: Optional[str] = None,
    order_no: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Dict[str, Any]:
    if status is not None and status not in CARD_STATUSES:
        raise ValidationError("invalid card status",
                              fields={"status": f"one of {CARD_STATUSES}"})
    page = max(1, page)
    page_size = max(1, min(page_size, 200))

    conds = []
    if product_id:
        conds.append(Card.product_id == product_id)
    if q and q.strip():
        conds.append(Card.secret.ilike(f"%{q.strip()}%"))
    if status:
        conds.append(Card.status == status)
    if order_no and order_no.strip():
        conds.append(Order.order_no == order_no.strip())

    base = select(Card, Order.order_no).outerjoin(
        Order, Card.order_id == Order.id
    ).where(*conds)

    async with db.begin():
        total = (await db.execute(
            select(func.count()).select_from(base.subquery())
        )).scalar_one()
        rows = (await db.execute(
            base.order_by(Card.id.desc())
            .limit(page_size).offset((page - 1) * page_size)
        )).all()

    items = [{
        "id": card.id,
        "product_id": card.product_id,
        "secret": card.secret,
        "status": card.status,
        "order_id": card.order_id,
        "order_no": ono,
        "created_at": to_iso(card.created_at),
    } for card, ono in rows]
    return {"items": items, "total": int(total), "page": page,
            "page_size": page_size}


async def delete_cards(db: AsyncSession, card_ids: Iterable[int]) -> int:
    """Delete cards that were never allocated; anything else blocks."""
    ids = [int(i) for i in card_ids]
    if not ids:
        raise ValidationError("no cards selected",
                              fields={"ids": "select at least one card"})
    async with db.begin():
        rows = (await db.execute(
            select(Card.id, Card.status, Card.order_id)
            .where(Card.id.in_(ids))
        )).all()
        blocked = [
            r.id for r in rows
            if r.status != CARD_AVAILABLE or r.order_id is not None
        ]
        if blocked:
            raise InvalidState(
                f"cards already allocated cannot be deleted: "
                f"{', '.join(str(b) for b in blocked)}",
                data={"blocked": blocked},
            )
        res = await db.execute(
            delete(Card).where(Card.id.in_(ids), Card.status == CARD_AVAILABLE)
            .execution_options(**_NO_SYNC)
        )
    return int(res.rowcount or 0)
