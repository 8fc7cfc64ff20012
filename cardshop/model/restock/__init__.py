# model/restock/__init__.py
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...config import RESTOCK_BACKEND as BACKEND  # 'sql' | 'redis'
from ...errors import InvalidState, NotFound
from .. import catalog

if BACKEND == "redis":
    from ._redis import RestockStore as _RestockStore
else:
    from ._sql import RestockStore as _RestockStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("RestockStore(redis) requires r=redis.Redis")
        return _RestockStore(r=r)
    if db is None:
        raise RuntimeError("RestockStore(sql) requires db=AsyncSession")
    return _RestockStore(db=db)


def flag_key(product_id: str) -> str:
    # per-session display hint only; counts always come from the store
    return f"restock_requested:{product_id}"


async def request_restock(
    db: AsyncSession,
    store,
    product_id: str,
    user: Mapping[str, Any],
) -> Dict[str, Any]:
    if not user or not user.get("id"):
        raise InvalidState("log in to request a restock")
    product = await catalog.get_product(db, product_id)
    if not product["is_active"]:
        raise NotFound("product not found")
    if product["stock"] > 0:
        raise InvalidState("product is in stock")

    created = await store.request(product_id, user)
    summary = await store.summary(product_id)
    return {"created": created, "summary": summary}


RestockStore = _RestockStore
__all__ = ["RestockStore", "new_store", "request_restock", "flag_key",
           "BACKEND"]
