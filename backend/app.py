# backend/app.py

from contextlib import asynccontextmanager
from typing import List, Literal

import redis.asyncio as redis
from fastapi import FastAPI, HTTPException, Request
from pydantic import ValidationError

from config.logging_config import setup_logging
from config.settings import settings
from .blob_store import RedisBlobStore
from .model import (
    GenerateRequest,
    GenerateResponse,
    GenerationRequest,
    JobResult,
    ProviderConfig,
    QueueItem,
    QueueSummary,
)
from .queue_store import RedisQueueStore
from .utils import normalize_reference_image
from .worker import GenerationQueue


async def get_redis_client() -> redis.Redis:
    return redis.from_url(settings.REDIS_URL, decode_responses=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Khởi tạo Redis, blob store, queue; khôi phục queue đã lưu rồi chạy worker.
    Tests có thể gắn sẵn `app.state.queue` để bỏ qua Redis.
    """
    rds = None
    queue = getattr(app.state, "queue", None)
    if queue is None:
        setup_logging(settings)
        rds = await get_redis_client()
        queue = GenerationQueue(
            blob_store=RedisBlobStore(rds),
            queue_store=RedisQueueStore(rds),
        )
        await queue.restore()
        app.state.queue = queue

    queue.start()
    try:
        yield
    finally:
        await queue.stop()
        if rds is not None:
            await rds.aclose()


app = FastAPI(title="Image Generation Queue", lifespan=lifespan)


def _queue(request: Request) -> GenerationQueue:
    return request.app.state.queue


def _summary(item: QueueItem) -> QueueSummary:
    return QueueSummary(
        job_id=item.id,
        status=item.status,
        provider=item.config.provider,
        model=item.config.model,
        prompt=item.request.prompt,
        progress=item.progress,
        status_message=item.status_message,
        error_message=item.error,
        created_at=item.created_at,
        elapsed_time=item.elapsed_time,
    )


@app.get("/health")
async def health(request: Request):
    queue = _queue(request)
    current = queue.current_item()
    return {"ok": True, "items": len(queue.items()), "current_job_id": current.id if current else None}


@app.post("/generate", response_model=GenerateResponse)
async def generate(req: GenerateRequest, request: Request):
    try:
        references = tuple(normalize_reference_image(img) for img in req.reference_images)
        gen_request = GenerationRequest(
            prompt=req.prompt,
            reference_images=references,
            resolution=req.resolution,
            aspect_ratio=req.aspect_ratio,
        )
        config = ProviderConfig(provider=req.provider, model=req.model or "", api_key=req.api_key)
        job_id = _queue(request).enqueue(gen_request, config)
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return GenerateResponse(job_id=job_id, status="pending")


@app.get("/result/{job_id}", response_model=JobResult)
async def get_result(job_id: str, request: Request, include_images: bool = True):
    """
    Trả về trạng thái job + ảnh (nạp từ blob store nếu cần).
    """
    queue = _queue(request)
    if queue.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job không tồn tại")

    if include_images:
        await queue.hydrate(job_id)
    item = queue.get(job_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Job không tồn tại")

    return JobResult(
        job_id=item.id,
        status=item.status,
        progress=item.progress,
        status_message=item.status_message,
        thought_texts=item.thought_texts,
        interim_images=item.interim_images if include_images else [],
        final_images=item.final_images if include_images else [],
        error_message=item.error,
        attempt=item.attempt,
        created_at=item.created_at,
        started_at=item.started_at,
        completed_at=item.completed_at,
        elapsed_time=item.elapsed_time,
        extra={
            "provider": item.config.provider,
            "model": item.config.model,
            "reference_count": item.reference_count,
        },
    )


@app.get("/queue", response_model=List[QueueSummary])
async def list_queue(request: Request):
    return [_summary(item) for item in _queue(request).items()]


@app.post("/rerun/{job_id}", response_model=GenerateResponse)
async def rerun(job_id: str, request: Request):
    try:
        new_id = await _queue(request).rerun(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Job không tồn tại")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return GenerateResponse(job_id=new_id, status="pending")


@app.delete("/jobs/{job_id}")
async def delete_job(job_id: str, request: Request):
    if not _queue(request).remove(job_id):
        raise HTTPException(status_code=404, detail="Job không tồn tại")
    return {"deleted": job_id}


@app.delete("/jobs")
async def clear_jobs(request: Request, scope: Literal["completed", "all"] = "completed"):
    queue = _queue(request)
    removed = queue.clear_all() if scope == "all" else queue.clear_completed()
    return {"removed": removed, "scope": scope}
