# backend/queue_store.py

import json
import logging
from typing import List

import redis.asyncio as redis
from pydantic import ValidationError

from .model import QueueItem

logger = logging.getLogger(__name__)

QUEUE_KEY = "image_jobs"  # thứ tự các job (theo lúc tạo)
JOB_KEY_PREFIX = "job:"   # job:{job_id} -> metadata JSON, không chứa ảnh


class RedisQueueStore:
    """Persist queue metadata so the queue survives a restart."""

    def __init__(self, rds: redis.Redis):
        self._rds = rds

    async def save(self, item: QueueItem) -> None:
        key = f"{JOB_KEY_PREFIX}{item.id}"
        is_new = not await self._rds.exists(key)
        await self._rds.set(key, json.dumps(item.to_record()))
        if is_new:
            await self._rds.rpush(QUEUE_KEY, item.id)

    async def load_all(self) -> List[QueueItem]:
        ids = await self._rds.lrange(QUEUE_KEY, 0, -1)
        items: List[QueueItem] = []
        for job_id in ids:
            raw = await self._rds.get(f"{JOB_KEY_PREFIX}{job_id}")
            if not raw:
                logger.warning("[QueueStore] Missing record for job %s, dropping from order list", job_id)
                await self._rds.lrem(QUEUE_KEY, 0, job_id)
                continue
            try:
                items.append(QueueItem.from_record(json.loads(raw)))
            except (ValueError, ValidationError) as e:
                logger.error("[QueueStore] Invalid job record %s: %s", job_id, e)
        return items

    async def delete(self, item_id: str) -> None:
        await self._rds.delete(f"{JOB_KEY_PREFIX}{item_id}")
        await self._rds.lrem(QUEUE_KEY, 0, item_id)

    async def clear(self) -> None:
        ids = await self._rds.lrange(QUEUE_KEY, 0, -1)
        keys = [f"{JOB_KEY_PREFIX}{job_id}" for job_id in ids]
        if keys:
            await self._rds.delete(*keys)
        await self._rds.delete(QUEUE_KEY)
