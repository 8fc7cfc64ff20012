# model/catalog.py
"""
Products and categories.

Stock is never stored on the product: every read counts available cards,
so the figure cannot drift from the card rows.
"""
from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidState, NotFound, ValidationError
from ..helpers import now_ts, to_iso
from ..schemas import CategoryIn, ProductIn, ProductUpdate, to_cents
from . import inventory
from .db import Card, Category, Order, Product, RestockRequest

log = logging.getLogger(__name__)

products = Product.__table__
categories = Category.__table__


def product_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "slug": row["slug"],
        "name": row["name"],
        "description": row["description"],
        "price": row["price"],
        "original_price": row["original_price"],
        "category_id": row["category_id"],
        "is_active": bool(row["is_active"]),
        "is_featured": bool(row["is_featured"]),
        "sort_order": row["sort_order"],
        "min_quantity": row["min_quantity"],
        "max_quantity": row["max_quantity"],
        "created_at": to_iso(row["created_at"]),
        "updated_at": to_iso(row["updated_at"]),
    }


def _category_brief(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if row.get("cat_id") is None:
        return None
    return {"id": row["cat_id"], "slug": row["cat_slug"],
            "name": row["cat_name"]}


def _with_category():
    return (
        select(
            products,
            categories.c.id.label("cat_id"),
            categories.c.slug.label("cat_slug"),
            categories.c.name.label("cat_name"),
        )
        .select_from(products.outerjoin(
            categories, products.c.category_id == categories.c.id
        ))
    )


def _search(search: Optional[str]):
    like = f"%{search.strip()}%"
    return or_(products.c.name.ilike(like),
               products.c.description.ilike(like))


# ------------------------------------------------------------------------------
# Storefront reads
# ------------------------------------------------------------------------------

async def list_active_products(
    db: AsyncSession,
    category_id: Optional[str] = None,
    featured: bool = False,
    search: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    conds = [products.c.is_active.is_(True)]
    if category_id:
        conds.append(products.c.category_id == category_id)
    if featured:
        conds.append(products.c.is_featured.is_(True))
    if search and search.strip():
        conds.append(_search(search))

    async with db.begin():
        rows = (await db.execute(
            _with_category().where(*conds).order_by(
                products.c.is_featured.desc(),
                products.c.sort_order.asc(),
                products.c.created_at.desc(),
            ).limit(max(1, min(limit, 100))).offset(max(0, offset))
        )).mappings().all()
        if not rows:
            return []
        stock = await inventory.stock_counts(db, [r["id"] for r in rows])

    return [{
        **product_view(r),
        "category": _category_brief(r),
        "stock": stock[r["id"]]["available"],
    } for r in rows]


async def _product_with_stock(db: AsyncSession, *conds) -> Dict[str, Any]:
    async with db.begin():
        row = (await db.execute(
            _with_category().where(*conds)
        )).mappings().first()
        if row is None:
            raise NotFound("product not found")
        stock = await inventory.available_count(db, row["id"])
    return {**product_view(row), "category": _category_brief(row),
            "stock": stock}


async def get_product_by_slug(db: AsyncSession, slug: str) -> Dict[str, Any]:
    return await _product_with_stock(
        db, products.c.slug == slug, products.c.is_active.is_(True)
    )


async def get_product(db: AsyncSession, product_id: str) -> Dict[str, Any]:
    return await _product_with_stock(db, products.c.id == product_id)


# ------------------------------------------------------------------------------
# Admin
# ------------------------------------------------------------------------------

async def list_all_products(
    db: AsyncSession,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    conds = []
    if search and search.strip():
        conds.append(_search(search))

    async with db.begin():
        rows = (await db.execute(
            _with_category().where(*conds).order_by(
                products.c.sort_order.asc(), products.c.created_at.desc()
            ).limit(max(1, min(limit, 200))).offset(max(0, offset))
        )).mappings().all()
        if not rows:
            return []
        stats = await inventory.stock_counts(db, [r["id"] for r in rows])

    return [{
        **product_view(r),
        "category": _category_brief(r),
        "stock_stats": stats[r["id"]],
    } for r in rows]


async def _check_slug(
    db: AsyncSession, table, slug: str, exclude_id: Optional[str] = None
) -> None:
    conds = [table.c.slug == slug]
    if exclude_id is not None:
        conds.append(table.c.id != exclude_id)
    taken = (await db.execute(select(table.c.id).where(*conds))).first()
    if taken is not None:
        raise ValidationError("slug already exists",
                              fields={"slug": "already in use"})


async def _check_category(db: AsyncSession, category_id: Optional[str]):
    if category_id is None:
        return
    if await db.get(Category, category_id) is None:
        raise ValidationError("category not found",
                              fields={"category_id": "unknown category"})


async def create_product(db: AsyncSession, data: ProductIn) -> Dict[str, Any]:
    values = data.model_dump()
    values.update(
        id=uuid.uuid4().hex,
        price=to_cents(data.price),
        original_price=to_cents(data.original_price),
        created_at=now_ts(),
        updated_at=None,
    )
    try:
        async with db.begin():
            await _check_slug(db, products, data.slug)
            await _check_category(db, data.category_id)
            await db.execute(insert(products).values(**values))
    except IntegrityError:
        # lost a race on the unique slug
        raise ValidationError("slug already exists",
                              fields={"slug": "already in use"})
    log.info("product %s created (%s)", values["id"], data.slug)
    return product_view(values)


async def update_product(
    db: AsyncSession, product_id: str, data: ProductUpdate
) -> Dict[str, Any]:
    changes = data.model_dump(exclude_unset=True)
    if "price" in changes:
        if changes["price"] is None:
            raise ValidationError("price is required",
                                  fields={"price": "required"})
        changes["price"] = to_cents(changes["price"])
    if "original_price" in changes:
        changes["original_price"] = to_cents(changes["original_price"])
    for field in ("slug", "name", "is_active", "is_featured", "sort_order",
                  "min_quantity", "max_quantity"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be empty",
                                  fields={field: "required"})

    try:
        async with db.begin():
            row = (await db.execute(
                select(products).where(products.c.id == product_id)
            )).mappings().first()
            if row is None:
                raise NotFound("product not found")
            merged = {**row, **changes}
            if merged["max_quantity"] < merged["min_quantity"]:
                raise ValidationError(
                    "max_quantity must not be below min_quantity",
                    fields={"max_quantity": "below min_quantity"},
                )
            if "slug" in changes:
                await _check_slug(db, products, changes["slug"], product_id)
            if "category_id" in changes:
                await _check_category(db, changes["category_id"])
            merged["updated_at"] = changes["updated_at"] = now_ts()
            await db.execute(
                update(products).where(products.c.id == product_id)
                .values(**changes)
            )
    except IntegrityError:
        raise ValidationError("slug already exists",
                              fields={"slug": "already in use"})
    return product_view(merged)


async def delete_product(db: AsyncSession, product_id: str) -> None:
    """
    Products referenced by any order are kept (disable them instead);
    otherwise the product goes away with its never-sold cards.
    """
    async with db.begin():
        if await db.get(Product, product_id) is None:
            raise NotFound("product not found")
        referenced = (await db.execute(
            select(Order.id).where(Order.product_id == product_id).limit(1)
        )).first()
        if referenced is not None:
            raise InvalidState(
                "product has orders and cannot be deleted; disable it instead"
            )
        no_sync = {"synchronize_session": False}
        await db.execute(delete(Card).where(Card.product_id == product_id)
                         .execution_options(**no_sync))
        await db.execute(
            delete(RestockRequest)
            .where(RestockRequest.product_id == product_id)
            .execution_options(**no_sync)
        )
        await db.execute(delete(products).where(products.c.id == product_id))
    log.info("product %s deleted", product_id)


async def toggle_product_active(
    db: AsyncSession, product_id: str
) -> Dict[str, Any]:
    async with db.begin():
        row = (await db.execute(
            select(products.c.is_active).where(products.c.id == product_id)
        )).first()
        if row is None:
            raise NotFound("product not found")
        active = not bool(row.is_active)
        await db.execute(
            update(products).where(products.c.id == product_id)
            .values(is_active=active, updated_at=now_ts())
        )
    return {"id": product_id, "is_active": active}


# ------------------------------------------------------------------------------
# Categories
# ------------------------------------------------------------------------------

def category_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "slug": row["slug"],
        "name": row["name"],
        "description": row["description"],
        "sort_order": row["sort_order"],
    }


async def list_categories(db: AsyncSession) -> List[Dict[str, Any]]:
    counts = (
        select(products.c.category_id, func.count().label("n"))
        .where(products.c.is_active.is_(True))
        .group_by(products.c.category_id)
        .subquery()
    )
    async with db.begin():
        rows = (await db.execute(
            select(categories, counts.c.n)
            .outerjoin(counts, counts.c.category_id == categories.c.id)
            .order_by(categories.c.sort_order.asc(), categories.c.name.asc())
        )).mappings().all()
    return [{**category_view(r), "product_count": int(r["n"] or 0)}
            for r in rows]


async def get_category_by_slug(
    db: AsyncSession, slug: str, limit: int = 50, offset: int = 0
) -> Dict[str, Any]:
    async with db.begin():
        row = (await db.execute(
            select(categories).where(categories.c.slug == slug)
        )).mappings().first()
    if row is None:
        raise NotFound("category not found")
    items = await list_active_products(db, category_id=row["id"],
                                       limit=limit, offset=offset)
    return {**category_view(row), "products": items}


async def create_category(
    db: AsyncSession, data: CategoryIn
) -> Dict[str, Any]:
    values = {**data.model_dump(), "id": uuid.uuid4().hex,
              "created_at": now_ts()}
    try:
        async with db.begin():
            await _check_slug(db, categories, data.slug)
            await db.execute(insert(categories).values(**values))
    except IntegrityError:
        raise ValidationError("slug already exists",
                              fields={"slug": "already in use"})
    return category_view(values)
