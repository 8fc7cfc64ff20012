import uuid
from typing import List, Optional

import pytest
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardshop.helpers import new_order_no, now_ts
from cardshop.infra.sql import make_async_engine
from cardshop.model import inventory
from cardshop.model.db import Base, Card, Order, Product, CARD_SOLD, CARD_LOCKED


@pytest.fixture
async def engine(tmp_path):
    eng, _ = make_async_engine(f"sqlite:///{tmp_path / 'shop.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine):
    return async_sessionmaker(engine, class_=AsyncSession,
                              expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(sessions):
    async with sessions() as session:
        yield session


@pytest.fixture
def make_product(db):
    async def _make(name: str = "Game Key", price: int = 1000,
                    slug: Optional[str] = None, is_active: bool = True,
                    min_quantity: int = 1, max_quantity: int = 10,
                    category_id: Optional[str] = None,
                    is_featured: bool = False) -> str:
        pid = uuid.uuid4().hex
        async with db.begin():
            await db.execute(insert(Product).values(
                id=pid, slug=slug or f"p-{pid[:8]}", name=name,
                price=price, category_id=category_id, is_active=is_active,
                is_featured=is_featured, sort_order=0,
                min_quantity=min_quantity, max_quantity=max_quantity,
                created_at=now_ts(),
            ))
        return pid
    return _make


@pytest.fixture
def make_cards(db):
    async def _make(product_id: str, n: int, prefix: str = "KEY") -> List[int]:
        raw = "\n".join(f"{prefix}-{i:04d}" for i in range(n))
        await inventory.import_cards(db, product_id, raw)
        async with db.begin():
            ids = (await db.execute(
                select(Card.id).where(Card.product_id == product_id)
                .order_by(Card.id)
            )).scalars().all()
        return list(ids)
    return _make


@pytest.fixture
def make_order(db):
    """Insert an order directly in any status; cards are attached as
    locked (pending) or sold (anything past payment) when given."""
    async def _make(product_id: str, status: str = "pending",
                    quantity: int = 1, email: str = "buyer@example.com",
                    trade_no: Optional[str] = None,
                    card_ids: Optional[List[int]] = None,
                    total_amount: int = 1000,
                    refund_prior_status: Optional[str] = None) -> dict:
        oid = uuid.uuid4().hex
        values = dict(
            id=oid, order_no=new_order_no(), product_id=product_id,
            product_name="Game Key", quantity=quantity,
            total_amount=total_amount, payment_method="epay", email=email,
            status=status, trade_no=trade_no,
            refund_prior_status=refund_prior_status,
            created_at=now_ts(),
            paid_at=now_ts() if trade_no else None,
        )
        async with db.begin():
            await db.execute(insert(Order).values(**values))
            if card_ids:
                card_status = CARD_LOCKED if status == "pending" else CARD_SOLD
                await db.execute(
                    update(Card).where(Card.id.in_(card_ids))
                    .values(status=card_status, order_id=oid)
                    .execution_options(synchronize_session=False)
                )
        return values
    return _make


@pytest.fixture
def stock(db):
    async def _stock(product_id: str) -> dict:
        async with db.begin():
            counts = await inventory.stock_counts(db, [product_id])
        return counts[product_id]
    return _stock
