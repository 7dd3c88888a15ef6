# backend/worker.py

import asyncio
import logging
from typing import Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from config.settings import settings

from .blob_store import RedisBlobStore
from .errors import MAX_RETRIES_MESSAGE, GenerationError
from .model import (
    MAX_INTERIM_IMAGES,
    GenerationRequest,
    ImageKind,
    Provider,
    ProviderConfig,
    QueueItem,
    validate_submission,
)
from .provider_base import ImageProvider, resolve_adapter
from .queue_store import RedisQueueStore
from .retry_policy import RetryPolicy, RetryState, classify, policy_for
from .ticker import ElapsedTicker
from .utils import format_duration, gen_job_id, get_timestamp_ms

logger = logging.getLogger(__name__)

_RETRY_LABELS = {
    "network": "Network error",
    "timeout": "Request timed out",
    "stream-aborted": "Stream interrupted",
    "no-artifact": "No image generated",
    "http_429": "Rate limited",
}


def _retry_label(tag: str) -> str:
    if tag in _RETRY_LABELS:
        return _RETRY_LABELS[tag]
    return "Server error"


class _AttemptSink:
    """
    Sink cho một lần gọi adapter. Khi item đã bị xoá (hoặc đã settle)
    thì mọi callback cập nhật state trở thành no-op.
    """

    def __init__(self, queue: "GenerationQueue", item: QueueItem, attempt: int):
        self._queue = queue
        self._item = item
        self.attempt = attempt
        self.accepted = False
        self.settled = False
        self.error: Optional[GenerationError] = None
        self.final_images: List[str] = []

    def _live(self) -> bool:
        return self._queue._is_live(self._item)

    def on_thought(self, text: str) -> None:
        if self._live():
            self._item.add_thought(text)

    def on_interim_image(self, image: str) -> None:
        if not self._live():
            return
        self._item.add_interim(image)
        self._queue._write_images(self._item.id, "interim", list(self._item.interim_images))

    def on_final_images(self, images: List[str]) -> None:
        self.final_images.extend(images)

    def on_progress(self, progress: float, message: str) -> None:
        if self._live():
            self._item.progress = progress
            self._item.status_message = message

    def on_accepted(self) -> None:
        self.accepted = True
        logger.debug("[Worker] item=%s attempt=%d accepted by provider", self._item.id, self.attempt)

    def on_error(self, error: GenerationError) -> None:
        self.error = error
        logger.warning(
            "[Worker] item=%s attempt=%d error kind=%s status=%s: %s",
            self._item.id,
            self.attempt,
            error.kind,
            error.status_code,
            error.detail,
        )

    def on_settled(self) -> None:
        self.settled = True


class GenerationQueue:
    """
    Queue sinh ảnh single-flight: tại mọi thời điểm có tối đa MỘT item ở
    trạng thái `generating`, luôn lấy item `pending` cũ nhất (FIFO).

    The queue owns its items; callers only ever receive copies.
    Blob/metadata writes are fire-and-forget and never fail a generation.
    """

    def __init__(
        self,
        blob_store: Optional[RedisBlobStore] = None,
        queue_store: Optional[RedisQueueStore] = None,
        adapter_resolver: Callable[[Provider], ImageProvider] = resolve_adapter,
        policy_resolver: Callable[[Provider], RetryPolicy] = policy_for,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = get_timestamp_ms,
        tick_interval: float = settings.POLL_INTERVAL,
    ):
        self._blob_store = blob_store
        self._queue_store = queue_store
        self._adapter_resolver = adapter_resolver
        self._policy_resolver = policy_resolver
        self._sleep = sleep
        self._clock = clock
        self._tick_interval = tick_interval

        self._items: Dict[str, QueueItem] = {}
        self._current_id: Optional[str] = None
        self._slot = asyncio.Lock()
        self._wake = asyncio.Event()
        self._abandon: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()
        self._detached: Set[asyncio.Task] = set()

    # ===== lifecycle =====

    async def restore(self) -> int:
        """
        Nạp lại queue đã lưu. Item đang `generating` lúc tắt máy được đưa về
        `pending` (coi như chưa từng chạy), xoá progress/message.
        """
        if self._queue_store is None:
            return 0

        recovered = 0
        for item in await self._queue_store.load_all():
            if item.status == "generating":
                item.status = "pending"
                item.progress = None
                item.status_message = None
                item.started_at = None
                item.elapsed_time = None
                item.attempt = 0
                recovered += 1
                self._persist(item)
            self._items[item.id] = item

        logger.info("[Worker] Restored %d items, %d demoted from generating to pending", len(self._items), recovered)
        self._wake.set()
        return recovered

    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._worker_loop())
        logger.info("[Worker] Started")

    async def stop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        detached = list(self._detached)
        for call in detached:
            call.cancel()
        await asyncio.gather(*detached, return_exceptions=True)
        await self.flush()
        logger.info("[Worker] Stopped")

    async def flush(self) -> None:
        """Đợi tất cả các lần ghi nền (blob store / queue store) chạy xong."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ===== queue operations =====

    def enqueue(self, request: GenerationRequest, config: ProviderConfig) -> str:
        validate_submission(request, config)

        item = QueueItem(
            id=gen_job_id(),
            request=request,
            config=config,
            reference_count=len(request.reference_images),
            created_at=self._clock(),
        )
        self._items[item.id] = item

        if request.reference_images:
            self._write_images(item.id, "reference", list(request.reference_images))
        self._persist(item)

        logger.info(
            "[Worker] Enqueued item=%s provider=%s model=%s references=%d prompt=%s",
            item.id,
            config.provider,
            config.model,
            item.reference_count,
            request.prompt[:50],
        )
        self._wake.set()
        return item.id

    async def rerun(self, item_id: str) -> str:
        """Tạo item MỚI với cùng request; item cũ giữ nguyên để còn lịch sử."""
        item = self._require(item_id)
        await self.hydrate(item_id)
        new_id = self.enqueue(item.request, item.config)
        logger.info("[Worker] Rerun of item=%s created item=%s", item_id, new_id)
        return new_id

    def remove(self, item_id: str) -> bool:
        item = self._items.pop(item_id, None)
        if item is None:
            return False

        if item_id == self._current_id:
            # adapter call may still finish in the background; its callbacks are now no-ops
            logger.info("[Worker] item=%s removed while generating, detaching", item_id)
            if self._abandon is not None:
                self._abandon.set()

        self._forget(item_id)
        return True

    def clear_completed(self) -> int:
        settled = [item_id for item_id, item in self._items.items() if item.settled]
        for item_id in settled:
            self.remove(item_id)
        return len(settled)

    def clear_all(self) -> int:
        ids = list(self._items)
        for item_id in ids:
            self.remove(item_id)
        return len(ids)

    def get(self, item_id: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item is not None else None

    def items(self) -> List[QueueItem]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    def current_item(self) -> Optional[QueueItem]:
        return self.get(self._current_id) if self._current_id else None

    async def hydrate(self, item_id: str) -> None:
        """Nạp ảnh (reference/interim/final) từ blob store nếu chưa có trong bộ nhớ."""
        item = self._require(item_id)
        if item.images_loaded or self._blob_store is None:
            return

        stored = await self._blob_store.load_all(item_id)
        if self._items.get(item_id) is not item:
            return

        if stored["reference"]:
            item.request = item.request.model_copy(update={"reference_images": tuple(stored["reference"])})
        if stored["interim"] and not item.interim_images:
            item.interim_images = stored["interim"][-MAX_INTERIM_IMAGES:]
        if stored["final"] and not item.final_images:
            item.final_images = stored["final"]
        item.images_loaded = True
        logger.debug(
            "[Worker] Hydrated item=%s: %d reference, %d interim, %d final",
            item_id,
            len(stored["reference"]),
            len(stored["interim"]),
            len(stored["final"]),
        )

    def evict(self, item_id: str) -> bool:
        """Bỏ ảnh của item đã settle khỏi bộ nhớ; hydrate() sẽ nạp lại khi cần."""
        item = self._require(item_id)
        if self._blob_store is None or not item.settled or not item.images_loaded:
            return False
        item.request = item.request.model_copy(update={"reference_images": ()})
        item.interim_images = []
        item.final_images = []
        item.images_loaded = False
        return True

    # ===== processing =====

    async def process_pending(self) -> int:
        """Xử lý lần lượt mọi item pending rồi trả về số item đã xử lý."""
        processed = 0
        while True:
            item = self._next_pending()
            if item is None:
                return processed
            await self._process(item)
            processed += 1

    async def _worker_loop(self) -> None:
        while True:
            item = self._next_pending()
            if item is None:
                self._wake.clear()
                await self._wake.wait()
                continue
            try:
                await self._process(item)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[Worker] Unexpected error while processing item=%s", item.id)
                if self._items.get(item.id) is item and not item.settled:
                    self._fail(item, "Internal error while processing the request")

    def _next_pending(self) -> Optional[QueueItem]:
        for item in self._items.values():
            if item.status == "pending":
                return item
        return None

    async def _process(self, item: QueueItem) -> None:
        async with self._slot:
            if self._items.get(item.id) is not item or item.status != "pending":
                return

            if not item.images_loaded:
                await self.hydrate(item.id)
                if self._items.get(item.id) is not item:
                    return

            adapter = self._adapter_resolver(item.config.provider)
            policy = self._policy_resolver(item.config.provider)

            self._current_id = item.id
            self._abandon = asyncio.Event()
            item.status = "generating"
            item.started_at = self._clock()
            item.elapsed_time = 0
            item.progress = 0
            item.status_message = "Preparing request..."
            item.thought_texts = []
            item.interim_images = []
            item.final_images = []
            item.error = None
            self._persist(item)
            logger.info(
                "[Worker] Processing item=%s provider=%s policy=%s",
                item.id,
                item.config.provider,
                policy.name,
            )

            ticker = ElapsedTicker(lambda: self._tick(item), self._tick_interval)
            ticker.start()
            try:
                await self._run_attempts(item, adapter, policy)
            finally:
                await ticker.stop()
                self._current_id = None
                self._abandon = None

    async def _run_attempts(self, item: QueueItem, adapter: ImageProvider, policy: RetryPolicy) -> None:
        state = RetryState()

        while True:
            state.attempt += 1
            item.attempt = state.attempt
            # bỏ dữ liệu tạm của lần thử trước (kể cả bản trong blob store) để UI không thấy lặp
            item.thought_texts = []
            item.interim_images = []
            self._clear_images(item.id, "interim")

            sink = _AttemptSink(self, item, state.attempt)
            logger.info(
                "[Worker] item=%s attempt=%d/%d dispatching to %s",
                item.id,
                state.attempt,
                policy.max_attempts,
                item.config.provider,
            )
            if not await self._dispatch(adapter, item, sink):
                logger.info("[Worker] item=%s removed during attempt=%d, releasing slot", item.id, state.attempt)
                return

            if not self._is_live(item):
                logger.info("[Worker] item=%s attempt=%d finished after removal, result dropped", item.id, state.attempt)
                return

            if sink.final_images:
                if sink.error is not None:
                    logger.warning(
                        "[Worker] item=%s attempt=%d final image arrived before error %r, keeping it",
                        item.id,
                        state.attempt,
                        sink.error,
                    )
                self._complete(item, sink.final_images)
                return

            error = sink.error or GenerationError("no-artifact", "No image was generated")
            if sink.accepted:
                state.record_accepted()

            verdict = classify(error)
            logger.info(
                "[Worker] item=%s attempt=%d classified kind=%s tag=%s retryable=%s",
                item.id,
                state.attempt,
                error.kind,
                verdict.tag,
                verdict.retryable,
            )

            if not verdict.retryable:
                self._fail(item, error.detail)
                return

            if policy.exhausted(state.attempt):
                logger.error("[Worker] item=%s max retries (%d) reached", item.id, policy.max_attempts)
                self._fail(item, MAX_RETRIES_MESSAGE.format(attempts=state.attempt))
                return

            consecutive = state.record_failure(verdict.tag)
            interval = policy.next_interval(consecutive)
            item.progress = 5
            item.status_message = (
                f"{_retry_label(verdict.tag)}, retrying in {format_duration(interval)} "
                f"(attempt {state.attempt + 1})"
            )
            logger.info(
                "[Worker] item=%s attempt=%d waiting %.1fs before retry (tag=%s consecutive=%d)",
                item.id,
                state.attempt,
                interval,
                verdict.tag,
                consecutive,
            )

            if not await self._backoff(interval):
                logger.info("[Worker] item=%s removed during backoff, giving up", item.id)
                return

    async def _dispatch(self, adapter: ImageProvider, item: QueueItem, sink: _AttemptSink) -> bool:
        """
        Chạy một lần gọi adapter. Nếu item bị xoá giữa chừng thì trả về False
        ngay; lời gọi vẫn chạy nền tới khi xong, callback của nó là no-op.
        """
        call = asyncio.ensure_future(adapter.generate(item.config, item.request, sink))
        abandon = self._abandon
        if abandon is None:
            await call
            return True

        waiter = asyncio.ensure_future(abandon.wait())
        try:
            await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if call.done():
            call.result()
            return True

        self._detached.add(call)
        call.add_done_callback(lambda task: self._reap_detached(task, item.id))
        return False

    def _reap_detached(self, task: asyncio.Task, item_id: str) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("[Worker] Detached call for removed item=%s failed: %r", item_id, exc)
        else:
            logger.debug("[Worker] Detached call for removed item=%s finished", item_id)

    async def _backoff(self, interval: float) -> bool:
        """Chờ `interval` giây; trả về False nếu item bị xoá trong lúc chờ."""
        abandon = self._abandon
        if abandon is None:
            await self._sleep(interval)
            return True

        sleeper = asyncio.ensure_future(self._sleep(interval))
        waiter = asyncio.ensure_future(abandon.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        return not abandon.is_set()

    # ===== state transitions =====

    def _is_live(self, item: QueueItem) -> bool:
        return self._items.get(item.id) is item and item.status == "generating"

    def _tick(self, item: QueueItem) -> None:
        if self._is_live(item) and item.started_at is not None:
            item.elapsed_time = self._clock() - item.started_at

    def _complete(self, item: QueueItem, images: List[str]) -> None:
        now = self._clock()
        item.status = "completed"
        item.final_images = list(images)
        item.progress = 100
        item.status_message = "Done!"
        item.completed_at = now
        item.elapsed_time = now - (item.started_at or now)
        self._write_images(item.id, "final", item.final_images)
        self._persist(item)
        logger.info(
            "[Worker] item=%s completed with %d image(s) after %d attempt(s) in %dms",
            item.id,
            len(images),
            item.attempt,
            item.elapsed_time,
        )

    def _fail(self, item: QueueItem, message: str) -> None:
        now = self._clock()
        item.status = "error"
        item.error = message
        item.status_message = None
        item.completed_at = now
        item.elapsed_time = now - (item.started_at or now)
        self._persist(item)
        logger.error("[Worker] item=%s failed after %d attempt(s): %s", item.id, item.attempt, message)

    def _require(self, item_id: str) -> QueueItem:
        item = self._items.get(item_id)
        if item is None:
            raise KeyError(f"Job {item_id} không tồn tại")
        return item

    # ===== fire-and-forget persistence =====

    def _write_images(self, item_id: str, kind: ImageKind, images: List[str]) -> None:
        if self._blob_store is not None:
            self._spawn(self._blob_store.save(item_id, kind, images), f"save {kind} images for {item_id}")

    def _clear_images(self, item_id: str, kind: ImageKind) -> None:
        if self._blob_store is not None:
            self._spawn(self._blob_store.clear(item_id, kind), f"clear {kind} images for {item_id}")

    def _persist(self, item: QueueItem) -> None:
        if self._queue_store is not None:
            self._spawn(self._queue_store.save(item), f"persist item {item.id}")

    def _forget(self, item_id: str) -> None:
        if self._queue_store is not None:
            self._spawn(self._queue_store.delete(item_id), f"delete item {item_id}")
        if self._blob_store is not None:
            self._spawn(self._blob_store.delete(item_id), f"delete images for {item_id}")

    def _spawn(self, coro: Coroutine, what: str) -> None:
        task = asyncio.create_task(self._guarded(coro, what))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guarded(self, coro: Coroutine, what: str) -> None:
        # ghi theo đúng thứ tự được lên lịch (asyncio.Lock là FIFO)
        async with self._write_lock:
            try:
                await coro
            except Exception as e:
                logger.warning("[Worker] Background write failed (%s): %r", what, e)
