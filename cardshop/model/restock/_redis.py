from __future__ import annotations
import json
import time
from typing import Any, Dict, Mapping

import redis.asyncio as redis


# ---- keys
def k_requests(pid: str) -> str: return f"restock:{pid}"
def k_profiles(pid: str) -> str: return f"restock:{pid}:users"


class RestockStore:
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def request(self, product_id: str, user: Mapping[str, Any]) -> bool:
        uid = str(user["id"])
        profile = json.dumps({
            "user_id": uid,
            "username": user.get("username") or uid,
            "user_image": user.get("image"),
        })
        pipe = self.r.pipeline(transaction=True)
        pipe.zadd(k_requests(product_id), {uid: time.time()}, nx=True)
        pipe.hsetnx(k_profiles(product_id), uid, profile)
        added, _ = await pipe.execute()
        return bool(added)

    async def summary(self, product_id: str, limit: int = 8) -> Dict[str, Any]:
        pipe = self.r.pipeline()
        pipe.zcard(k_requests(product_id))
        pipe.zrevrange(k_requests(product_id), 0, max(0, limit - 1))
        count, uids = await pipe.execute()

        requesters = []
        if uids:
            raw = await self.r.hmget(k_profiles(product_id), uids)
            for uid, blob in zip(uids, raw):
                if blob:
                    requesters.append(json.loads(blob))
                else:
                    requesters.append({"user_id": uid, "username": uid,
                                       "user_image": None})
        return {"count": int(count), "requesters": requesters}

    async def clear(self, product_id: str) -> int:
        n = await self.r.zcard(k_requests(product_id))
        await self.r.delete(k_requests(product_id), k_profiles(product_id))
        return int(n)
