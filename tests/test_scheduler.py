"""Tests for the batch scheduler"""
import asyncio

import pytest

from resumable_upload.core.exceptions import (
    ChunkRejectedError,
    PlanningError,
    TransientTransportError,
    UploadCancelledError,
    UploadFailedError,
)
from resumable_upload.models.session import UploadStatus
from resumable_upload.schemas.upload import ProgressEvent
from resumable_upload.services.progress import ProgressChannel
from resumable_upload.services.scheduler import UploadScheduler
from resumable_upload.services.transport import ChunkTransport


def make_scheduler(api, concurrency=3) -> UploadScheduler:
    return UploadScheduler(ChunkTransport(api, retry_base_delay=0), concurrency=concurrency)


async def drain(channel: ProgressChannel):
    channel.close()
    return [event async for event in channel.events()]


def test_concurrency_must_be_positive(fake_backend):
    with pytest.raises(PlanningError):
        make_scheduler(fake_backend, concurrency=0)


def test_batches(fake_backend):
    scheduler = make_scheduler(fake_backend)
    assert scheduler.batches(list(range(10))) == [[0, 1, 2], [3, 4, 5], [6, 7, 8], [9]]
    assert scheduler.batches([]) == []


async def test_never_more_than_three_in_flight(fake_backend, open_session, make_file):
    fake_backend.chunk_delay = 0.01
    session, source = await open_session(fake_backend, make_file(10 * 1024), 1024)

    await make_scheduler(fake_backend).run(session, source)

    assert fake_backend.max_in_flight == 3
    assert session.status == UploadStatus.CHUNKS_COMPLETED
    assert session.uploaded_chunks == set(range(10))


async def test_batch_settles_before_next_starts(fake_backend, open_session, make_file):
    fake_backend.chunk_delay = 0.005
    session, source = await open_session(fake_backend, make_file(10 * 1024), 1024)

    await make_scheduler(fake_backend).run(session, source)

    timeline = fake_backend.timeline
    for batch_start in (3, 6, 9):
        first_start = timeline.index(("start", batch_start))
        previous_ends = [timeline.index(("end", i)) for i in range(batch_start - 3, batch_start)]
        assert max(previous_ends) < first_start


async def test_failed_chunk_aborts_remaining_batches(fake_backend, open_session, make_file):
    session, source = await open_session(fake_backend, make_file(10 * 1024), 1024)
    fake_backend.failures[4] = [ChunkRejectedError("Checksum mismatch for chunk 4", 400)]

    with pytest.raises(UploadFailedError) as exc_info:
        await make_scheduler(fake_backend).run(session, source)

    assert set(exc_info.value.failed_chunks) == {4}
    assert exc_info.value.error_class == "ChunkRejectedError"
    assert session.status == UploadStatus.FAILED
    # the failing batch settled, nothing after it started
    assert session.uploaded_chunks == {0, 1, 2, 3, 5}
    assert max(fake_backend.started_indices()) == 5


async def test_progress_events(fake_backend, open_session, make_file):
    session, source = await open_session(fake_backend, make_file(10 * 1024), 1024)
    channel = ProgressChannel()

    await make_scheduler(fake_backend).run(session, source, channel=channel)
    events = await drain(channel)

    assert [e.completed_chunks for e in events] == list(range(1, 11))
    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert sorted(e.current_chunk for e in events) == list(range(10))


async def test_progress_events_report_retries(fake_backend, open_session, make_file):
    session, source = await open_session(fake_backend, make_file(2048), 1024)
    fake_backend.failures[1] = [TransientTransportError("503", 503), TransientTransportError("503", 503)]
    channel = ProgressChannel()

    await make_scheduler(fake_backend).run(session, source, channel=channel)
    events = {e.current_chunk: e for e in await drain(channel)}

    assert events[0].retries == 0
    assert events[1].retries == 2
    assert session.retry_attempts == {}


async def test_cancel_lets_current_batch_finish(fake_backend, open_session, make_file):
    session, source = await open_session(fake_backend, make_file(10 * 1024), 1024)
    cancel_event = asyncio.Event()

    def cancel_during_second_batch(index):
        if index == 4:
            cancel_event.set()

    fake_backend.on_chunk_start = cancel_during_second_batch

    with pytest.raises(UploadCancelledError):
        await make_scheduler(fake_backend).run(session, source, cancel_event=cancel_event)

    assert session.uploaded_chunks == {0, 1, 2, 3, 4, 5}
    assert max(fake_backend.started_indices()) == 5
    # caller owns the cancel transition
    assert session.status == UploadStatus.UPLOADING


async def test_cancel_before_start(fake_backend, open_session, make_file):
    session, source = await open_session(fake_backend, make_file(4096), 1024)
    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(UploadCancelledError):
        await make_scheduler(fake_backend).run(session, source, cancel_event=cancel_event)

    assert fake_backend.chunk_calls == []


async def test_checkpoint_after_each_batch(fake_backend, open_session, make_file):
    session, source = await open_session(fake_backend, make_file(7 * 1024), 1024)
    seen = []

    await make_scheduler(fake_backend).run(
        session, source, checkpoint=lambda s: seen.append(len(s.uploaded_chunks))
    )

    assert seen == [3, 6, 7]


async def test_only_missing_chunks_are_sent(fake_backend, open_session, make_file):
    session, source = await open_session(fake_backend, make_file(5 * 1024), 1024)
    session.uploaded_chunks.update({0, 1, 2})

    await make_scheduler(fake_backend).run(session, source)

    assert sorted(fake_backend.started_indices()) == [3, 4]


async def test_progress_channel_delivers_until_closed():
    channel = ProgressChannel()
    event = ProgressEvent(session_id="s1", status="uploading", progress=50,
                          completed_chunks=1, total_chunks=2)
    channel.publish(event)

    assert await drain(channel) == [event]
    assert channel.closed
    with pytest.raises(RuntimeError):
        channel.publish(event)
