from __future__ import annotations
from typing import Any, Dict, Mapping

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ..db import RestockRequest

requests = RestockRequest.__table__


class RestockStore:
    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def request(self, product_id: str, user: Mapping[str, Any]) -> bool:
        """True if this user had not asked for the product yet."""
        try:
            async with self.db.begin():
                seen = (await self.db.execute(
                    select(requests.c.id).where(
                        requests.c.product_id == product_id,
                        requests.c.user_id == str(user["id"]),
                    )
                )).first()
                if seen is not None:
                    return False
                await self.db.execute(insert(requests).values(
                    product_id=product_id,
                    user_id=str(user["id"]),
                    username=user.get("username") or str(user["id"]),
                    user_image=user.get("image"),
                    created_at=now_ts(),
                ))
        except IntegrityError:
            # a concurrent request by the same user won
            return False
        return True

    async def summary(self, product_id: str, limit: int = 8) -> Dict[str, Any]:
        async with self.db.begin():
            count = (await self.db.execute(
                select(func.count()).select_from(requests)
                .where(requests.c.product_id == product_id)
            )).scalar_one()
            rows = (await self.db.execute(
                select(requests.c.user_id, requests.c.username,
                       requests.c.user_image)
                .where(requests.c.product_id == product_id)
                .order_by(requests.c.created_at.desc(), requests.c.id.desc())
                .limit(max(1, limit))
            )).mappings().all()
        return {
            "count": int(count),
            "requesters": [{
                "user_id": r["user_id"],
                "username": r["username"],
                "user_image": r["user_image"],
            } for r in rows],
        }

    async def clear(self, product_id: str) -> int:
        async with self.db.begin():
            res = await self.db.execute(
                delete(requests).where(requests.c.product_id == product_id)
            )
        return int(res.rowcount or 0)
