# backend/blob_store.py

import asyncio
import logging
from typing import Dict, List, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from .model import ImageKind

logger = logging.getLogger(__name__)

IMAGE_KEY_PREFIX = "images:"  # images:{item_id}:{kind} -> hash {index: base64}
IMAGE_KINDS: Sequence[ImageKind] = ("reference", "interim", "final")


def image_key(item_id: str, kind: ImageKind) -> str:
    return f"{IMAGE_KEY_PREFIX}{item_id}:{kind}"


class RedisBlobStore:
    """
    Lưu ảnh base64 lớn tách khỏi metadata của queue.
    Mọi hàm đều best-effort: lỗi Redis chỉ log, không bao giờ raise.
    """

    def __init__(self, rds: redis.Redis):
        self._rds = rds

    async def save(self, item_id: str, kind: ImageKind, images: Sequence[str]) -> None:
        if not images:
            return
        mapping = {str(idx): data for idx, data in enumerate(images)}
        try:
            # cùng index -> ghi đè, không nhân bản
            await self._rds.hset(image_key(item_id, kind), mapping=mapping)
        except RedisError as e:
            logger.error("[BlobStore] Failed to save %d %s images for %s: %s", len(images), kind, item_id, e)
            return
        logger.debug("[BlobStore] Saved %d %s images for %s", len(images), kind, item_id)

    async def load(self, item_id: str, kind: ImageKind) -> List[str]:
        try:
            stored = await self._rds.hgetall(image_key(item_id, kind))
        except RedisError as e:
            logger.error("[BlobStore] Failed to load %s images for %s: %s", kind, item_id, e)
            return []
        return [stored[idx] for idx in sorted(stored, key=int)]

    async def load_all(self, item_id: str) -> Dict[str, List[str]]:
        reference, interim, final = await asyncio.gather(
            *(self.load(item_id, kind) for kind in IMAGE_KINDS)
        )
        return {"reference": reference, "interim": interim, "final": final}

    async def clear(self, item_id: str, kind: ImageKind) -> None:
        """Xoá toàn bộ ảnh một loại của item (vd: interim của lần thử trước)."""
        try:
            await self._rds.delete(image_key(item_id, kind))
        except RedisError as e:
            logger.error("[BlobStore] Failed to clear %s images for %s: %s", kind, item_id, e)

    async def delete(self, item_id: str) -> None:
        try:
            removed = await self._rds.delete(*(image_key(item_id, kind) for kind in IMAGE_KINDS))
        except RedisError as e:
            logger.error("[BlobStore] Failed to delete images for %s: %s", item_id, e)
            return
        logger.debug("[BlobStore] Deleted %s image keys for %s", removed, item_id)
