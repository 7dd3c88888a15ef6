"""Tests for the single-flight generation queue."""

import asyncio
import itertools

import pytest

from backend.errors import MAX_RETRIES_MESSAGE, GenerationError
from backend.model import GenerationRequest, ProviderConfig
from backend.worker import GenerationQueue
from conftest import ScriptedProvider


def make_queue(provider, fast_policy, sleep, **kwargs) -> GenerationQueue:
    return GenerationQueue(
        adapter_resolver=lambda _: provider,
        policy_resolver=fast_policy,
        sleep=sleep,
        tick_interval=0.01,
        **kwargs,
    )


def request_for(prompt: str, *refs: str) -> GenerationRequest:
    return GenerationRequest(prompt=prompt, reference_images=refs, resolution="1K", aspect_ratio="1:1")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_items_run_one_at_a_time_in_fifo_order(fast_policy, sleep_recorder, google_config):
    seen_generating = []
    queue = None

    def check(sink):
        seen_generating.append(sum(1 for i in queue.items() if i.status == "generating"))
        sink.on_accepted()
        sink.on_final_images(["IMG"])

    provider = ScriptedProvider([check])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    ids = [queue.enqueue(request_for(p), google_config) for p in ("first", "second", "third")]

    # worker loop and a manual drain compete for the same slot
    queue.start()
    await queue.process_pending()
    await wait_until(lambda: all(queue.get(i).settled for i in ids))
    await queue.stop()

    assert [r.prompt for r in provider.requests] == ["first", "second", "third"]
    assert provider.max_active == 1
    assert seen_generating == [1, 1, 1]
    assert all(queue.get(i).status == "completed" for i in ids)


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried(fast_policy, sleep_recorder, google_config, simple_request):
    provider = ScriptedProvider([GenerationError("http", "Invalid API key", status_code=401)])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)

    assert await queue.process_pending() == 1

    item = queue.get(item_id)
    assert item.status == "error"
    assert item.error == "Invalid API key"
    assert item.completed_at is not None
    assert provider.calls == 1
    assert sleep_recorder.calls == []


@pytest.mark.asyncio
async def test_malformed_response_is_not_retried(fast_policy, sleep_recorder, google_config, simple_request):
    provider = ScriptedProvider([GenerationError("malformed-response", "Response body is not a JSON object: list")])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()

    assert queue.get(item_id).status == "error"
    assert provider.calls == 1
    assert sleep_recorder.calls == []


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_network_call(fast_policy, sleep_recorder, simple_request):
    provider = ScriptedProvider([["IMG"]])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, ProviderConfig(provider="google", api_key="  "))

    await queue.process_pending()

    assert provider.calls == 0
    assert queue.get(item_id).status == "error"
    assert "No API key" in queue.get(item_id).error


@pytest.mark.asyncio
async def test_retryable_error_stops_at_max_attempts(fast_policy, sleep_recorder, google_config, simple_request):
    provider = ScriptedProvider([GenerationError("http", "Too many requests", status_code=429)])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()

    item = queue.get(item_id)
    assert provider.calls == 3
    assert sleep_recorder.calls == [10.0, 10.0]
    assert item.status == "error"
    assert item.error == MAX_RETRIES_MESSAGE.format(attempts=3)
    assert item.attempt == 3


@pytest.mark.asyncio
async def test_backoff_status_message(fast_policy, google_config, simple_request):
    messages = []
    queue = None
    item_id = None

    async def sleep(seconds):
        messages.append(queue.get(item_id).status_message)

    provider = ScriptedProvider([GenerationError("http", "busy", status_code=429), ["IMG"]])
    queue = make_queue(provider, fast_policy, sleep)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()

    assert messages == ["Rate limited, retrying in 10s (attempt 2)"]
    assert queue.get(item_id).status == "completed"


@pytest.mark.asyncio
async def test_retry_clears_previous_attempt_output(fast_policy, sleep_recorder, google_config, simple_request):
    def aborted(sink):
        sink.on_accepted()
        sink.on_thought("first try")
        sink.on_interim_image("PREVIEW")
        raise GenerationError("stream-aborted", "connection reset")

    def succeeded(sink):
        sink.on_accepted()
        sink.on_thought("second try")
        sink.on_progress(90, "Processing final image...")
        sink.on_final_images(["FINAL"])

    provider = ScriptedProvider([aborted, succeeded])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()

    item = queue.get(item_id)
    assert item.status == "completed"
    assert item.thought_texts == ["second try"]
    assert item.interim_images == []
    assert item.final_images == ["FINAL"]
    assert item.progress == 100
    assert item.attempt == 2
    assert sleep_recorder.calls == [10.0]
    # same immutable request on every attempt
    assert provider.requests[0] is provider.requests[1]


@pytest.mark.asyncio
async def test_final_image_before_error_is_kept(fast_policy, sleep_recorder, google_config, simple_request):
    def final_then_abort(sink):
        sink.on_accepted()
        sink.on_final_images(["FINAL"])
        raise GenerationError("stream-aborted", "trailing bytes lost")

    provider = ScriptedProvider([final_then_abort])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()

    assert queue.get(item_id).status == "completed"
    assert queue.get(item_id).final_images == ["FINAL"]
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_accepted_without_image_is_retried(fast_policy, sleep_recorder, google_config, simple_request):
    def nothing(sink):
        sink.on_accepted()

    provider = ScriptedProvider([nothing, ["IMG"]])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()

    assert provider.calls == 2
    assert queue.get(item_id).status == "completed"


@pytest.mark.asyncio
async def test_removed_during_generation_drops_late_results(
    fast_policy, sleep_recorder, google_config, blob_store, queue_store, fake_redis
):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(sink):
        sink.on_accepted()
        started.set()
        await release.wait()
        sink.on_thought("late thought")
        sink.on_interim_image("LATE_PREVIEW")
        sink.on_final_images(["LATE"])

    provider = ScriptedProvider([slow, ["NEXT"]])
    queue = make_queue(provider, fast_policy, sleep_recorder, blob_store=blob_store, queue_store=queue_store)
    first = queue.enqueue(request_for("first"), google_config)
    second = queue.enqueue(request_for("second"), google_config)

    task = asyncio.create_task(queue.process_pending())
    await started.wait()
    assert queue.current_item().id == first
    assert queue.remove(first)

    # the next item runs while the removed call is still in flight
    assert await asyncio.wait_for(task, 2.0) == 2
    assert queue.get(second).status == "completed"
    assert provider.active == 1

    release.set()
    await wait_until(lambda: provider.active == 0)
    await queue.flush()

    assert queue.get(first) is None
    assert [i.id for i in queue.items()] == [second]
    assert f"job:{first}" not in fake_redis.strings
    assert not any(key.startswith(f"images:{first}") for key in fake_redis.hashes)
    assert fake_redis.lists["image_jobs"] == [second]


@pytest.mark.asyncio
async def test_hanging_call_on_removed_item_does_not_block_queue(fast_policy, sleep_recorder, google_config):
    started = asyncio.Event()

    async def hang(sink):
        sink.on_accepted()
        started.set()
        await asyncio.Event().wait()

    provider = ScriptedProvider([hang, ["NEXT"]])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    first = queue.enqueue(request_for("hangs"), google_config)
    second = queue.enqueue(request_for("after"), google_config)

    queue.start()
    await started.wait()
    queue.remove(first)
    await wait_until(lambda: queue.get(second).status == "completed")

    assert queue.current_item() is None
    assert provider.active == 1
    await queue.stop()
    assert provider.active == 0


@pytest.mark.asyncio
async def test_retry_drops_persisted_interim_images(
    fast_policy, sleep_recorder, google_config, simple_request, blob_store, fake_redis
):
    def two_previews_then_abort(sink):
        sink.on_accepted()
        sink.on_interim_image("OLD1")
        sink.on_interim_image("OLD2")
        raise GenerationError("stream-aborted", "connection reset")

    def one_preview_then_final(sink):
        sink.on_accepted()
        sink.on_interim_image("NEW")
        sink.on_final_images(["F"])

    provider = ScriptedProvider([two_previews_then_abort, one_preview_then_final])
    queue = make_queue(provider, fast_policy, sleep_recorder, blob_store=blob_store)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()
    await queue.flush()

    assert fake_redis.hashes[f"images:{item_id}:interim"] == {"0": "NEW"}
    assert queue.evict(item_id)
    await queue.hydrate(item_id)
    assert queue.get(item_id).interim_images == ["NEW"]


@pytest.mark.asyncio
async def test_removed_during_backoff_stops_retrying(fast_policy, google_config, simple_request):
    in_backoff = asyncio.Event()

    async def sleep_forever(seconds):
        in_backoff.set()
        await asyncio.Event().wait()

    provider = ScriptedProvider([GenerationError("network", "connection refused")])
    queue = make_queue(provider, fast_policy, sleep_forever)
    item_id = queue.enqueue(simple_request, google_config)

    task = asyncio.create_task(queue.process_pending())
    await in_backoff.wait()
    queue.remove(item_id)
    await asyncio.wait_for(task, 2.0)

    assert provider.calls == 1
    assert queue.items() == []
    assert queue.current_item() is None


@pytest.mark.asyncio
async def test_restart_demotes_generating_item_and_rehydrates_references(
    fast_policy, sleep_recorder, google_config, blob_store, queue_store, png_b64
):
    started = asyncio.Event()

    async def hang(sink):
        sink.on_accepted()
        started.set()
        await asyncio.Event().wait()

    crashed = make_queue(
        ScriptedProvider([hang]), fast_policy, sleep_recorder, blob_store=blob_store, queue_store=queue_store
    )
    first = crashed.enqueue(request_for("with reference", png_b64), google_config)
    second = crashed.enqueue(request_for("plain"), google_config)

    task = asyncio.create_task(crashed.process_pending())
    await started.wait()
    await crashed.flush()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    provider = ScriptedProvider([["IMG"]])
    restored = make_queue(provider, fast_policy, sleep_recorder, blob_store=blob_store, queue_store=queue_store)
    assert await restored.restore() == 1

    items = restored.items()
    assert [i.id for i in items] == [first, second]
    assert items[0].status == "pending"
    assert items[0].progress is None
    assert items[0].status_message is None
    assert items[0].images_loaded is False
    assert items[0].reference_count == 1

    assert await restored.process_pending() == 2
    assert provider.requests[0].reference_images == (png_b64,)
    assert all(i.status == "completed" for i in restored.items())


@pytest.mark.asyncio
async def test_interim_images_are_capped_and_persisted(
    fast_policy, sleep_recorder, google_config, simple_request, blob_store, fake_redis
):
    def previews(sink):
        sink.on_accepted()
        for data in ("P1", "P2", "P3"):
            sink.on_interim_image(data)
        sink.on_final_images(["F"])

    queue = make_queue(ScriptedProvider([previews]), fast_policy, sleep_recorder, blob_store=blob_store)
    item_id = queue.enqueue(simple_request, google_config)

    await queue.process_pending()
    await queue.flush()

    assert queue.get(item_id).interim_images == ["P2", "P3"]
    assert fake_redis.hashes[f"images:{item_id}:interim"] == {"0": "P2", "1": "P3"}
    assert fake_redis.hashes[f"images:{item_id}:final"] == {"0": "F"}


@pytest.mark.asyncio
async def test_evict_then_hydrate(fast_policy, sleep_recorder, google_config, simple_request, blob_store):
    queue = make_queue(ScriptedProvider([["F1", "F2"]]), fast_policy, sleep_recorder, blob_store=blob_store)
    item_id = queue.enqueue(simple_request, google_config)
    await queue.process_pending()
    await queue.flush()

    pending_id = queue.enqueue(simple_request, google_config)
    assert queue.evict(pending_id) is False

    assert queue.evict(item_id) is True
    assert queue.get(item_id).final_images == []
    assert queue.get(item_id).images_loaded is False

    await queue.hydrate(item_id)
    assert queue.get(item_id).final_images == ["F1", "F2"]


@pytest.mark.asyncio
async def test_thought_texts_are_capped(fast_policy, sleep_recorder, google_config, simple_request):
    def chatty(sink):
        sink.on_accepted()
        for n in range(510):
            sink.on_thought(f"thought {n}")
        sink.on_final_images(["F"])

    queue = make_queue(ScriptedProvider([chatty]), fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)
    await queue.process_pending()

    thoughts = queue.get(item_id).thought_texts
    assert len(thoughts) == 500
    assert thoughts[-1] == "thought 509"


def test_too_many_references_rejected_before_enqueue(fast_policy, sleep_recorder, google_config):
    queue = make_queue(ScriptedProvider([["IMG"]]), fast_policy, sleep_recorder)
    with pytest.raises(ValueError):
        queue.enqueue(request_for("five refs", *["QUJD"] * 5), google_config)
    assert queue.items() == []


@pytest.mark.asyncio
async def test_rerun_creates_new_pending_item(fast_policy, sleep_recorder, google_config, simple_request):
    provider = ScriptedProvider([["IMG"]])
    queue = make_queue(provider, fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)
    await queue.process_pending()

    new_id = await queue.rerun(item_id)

    assert new_id != item_id
    assert queue.get(item_id).status == "completed"
    assert queue.get(new_id).status == "pending"
    assert queue.get(new_id).request == simple_request

    with pytest.raises(KeyError):
        await queue.rerun("missing")


@pytest.mark.asyncio
async def test_clear_completed_keeps_pending(fast_policy, sleep_recorder, google_config, simple_request):
    queue = make_queue(ScriptedProvider([["IMG"]]), fast_policy, sleep_recorder)
    done = queue.enqueue(simple_request, google_config)
    await queue.process_pending()
    waiting = queue.enqueue(simple_request, google_config)

    assert queue.clear_completed() == 1
    assert [i.id for i in queue.items()] == [waiting]
    assert queue.get(done) is None
    assert queue.clear_all() == 1
    assert queue.items() == []


@pytest.mark.asyncio
async def test_elapsed_time_ticks_while_generating(fast_policy, sleep_recorder, google_config, simple_request):
    clock = itertools.count(1000, 100)
    observed = []
    queue = None
    item_id = None

    async def slow(sink):
        sink.on_accepted()
        await wait_until(lambda: (queue.get(item_id).elapsed_time or 0) > 0)
        observed.append(queue.get(item_id).elapsed_time)
        sink.on_final_images(["IMG"])

    queue = make_queue(ScriptedProvider([slow]), fast_policy, sleep_recorder, clock=lambda: next(clock))
    item_id = queue.enqueue(simple_request, google_config)
    await queue.process_pending()

    assert observed and observed[0] >= 100
    assert queue.get(item_id).elapsed_time > 0


@pytest.mark.asyncio
async def test_returned_items_are_copies(fast_policy, sleep_recorder, google_config, simple_request):
    queue = make_queue(ScriptedProvider([["IMG"]]), fast_policy, sleep_recorder)
    item_id = queue.enqueue(simple_request, google_config)

    snapshot = queue.get(item_id)
    snapshot.status = "error"
    snapshot.thought_texts.append("tampered")

    assert queue.get(item_id).status == "pending"
    assert queue.get(item_id).thought_texts == []
