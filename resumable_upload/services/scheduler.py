"""
Batch scheduler: drives the chunk transport over every missing chunk with
at most ``concurrency`` uploads in flight.

Missing indices are split into sequential batches of ``concurrency``. A
batch is launched all at once and fully settled before the next one starts,
so a failure is seen before any further chunk goes out and a cancel lets
in-flight chunks finish instead of tearing them down mid-write.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from ..core.config import settings
from ..core.exceptions import (
    ChunkUploadError,
    PlanningError,
    UploadCancelledError,
    UploadFailedError,
)
from ..models.session import UploadSession, UploadStatus
from ..schemas.upload import ProgressEvent
from .progress import ProgressChannel
from .source import FileSource
from .transport import ChunkResult, ChunkTransport

logger = logging.getLogger(__name__)


class UploadScheduler:
    """Runs chunk uploads in bounded, ordered batches"""

    def __init__(self, transport: ChunkTransport, concurrency: int = settings.MAX_CONCURRENCY):
        if concurrency < 1:
            raise PlanningError(f"concurrency must be >= 1, got {concurrency}")
        self.transport = transport
        self.concurrency = concurrency

    def batches(self, indices: List[int]) -> List[List[int]]:
        return [indices[i:i + self.concurrency] for i in range(0, len(indices), self.concurrency)]

    async def run(
        self,
        session: UploadSession,
        source: FileSource,
        channel: Optional[ProgressChannel] = None,
        cancel_event: Optional[asyncio.Event] = None,
        checkpoint: Optional[Callable[[UploadSession], None]] = None,
        is_resuming: bool = False,
    ) -> List[ChunkResult]:
        """
        Upload every chunk not yet in ``session.uploaded_chunks``.

        Leaves the session in ``chunks-completed`` on success. Marks it
        ``failed`` and raises UploadFailedError if any chunk fails. Raises
        UploadCancelledError (session status untouched) when ``cancel_event``
        is set; the caller owns the cancel transition.
        """
        session.transition(UploadStatus.UPLOADING)

        remaining = session.missing_chunks()
        batches = self.batches(remaining)
        logger.info(
            f"📤 Uploading {len(remaining)}/{session.total_chunks} chunks of {session.id} "
            f"in {len(batches)} batches (concurrency={self.concurrency})"
        )

        results: List[ChunkResult] = []
        for batch_number, batch in enumerate(batches, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"🛑 Cancel requested, not starting batch {batch_number} of {session.id}")
                raise UploadCancelledError(session.id)

            outcomes = await asyncio.gather(
                *(self._upload_one(session, source, index, channel, is_resuming) for index in batch),
                return_exceptions=True,
            )

            failures: Dict[int, ChunkUploadError] = {}
            for index, outcome in zip(batch, outcomes):
                if isinstance(outcome, ChunkUploadError):
                    failures[index] = outcome
                elif isinstance(outcome, Exception):
                    failures[index] = ChunkUploadError(index, outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)

            if failures:
                failed = sorted(failures)
                session.error = "; ".join(str(failures[i]) for i in failed)
                session.transition(UploadStatus.FAILED)
                logger.error(
                    f"❌ Batch {batch_number}/{len(batches)} of {session.id} failed, "
                    f"chunks {failed}; aborting remaining batches"
                )
                raise UploadFailedError(
                    session.id,
                    f"Failed to upload {len(failed)} chunk(s): {failed}",
                    failed_chunks=failures,
                )

            if checkpoint is not None:
                checkpoint(session)

            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"🛑 Cancel requested after batch {batch_number} of {session.id}")
                raise UploadCancelledError(session.id)

        session.transition(UploadStatus.CHUNKS_COMPLETED)
        logger.info(f"✓ All {session.total_chunks} chunks of {session.id} acknowledged")
        return results

    async def _upload_one(
        self,
        session: UploadSession,
        source: FileSource,
        index: int,
        channel: Optional[ProgressChannel],
        is_resuming: bool,
    ) -> ChunkResult:
        result = await self.transport.upload(session, source, index)

        # Acknowledged by the backend: record before anyone hears about it
        session.mark_chunk_uploaded(index)

        if channel is not None:
            channel.publish(ProgressEvent(
                session_id=session.id,
                status=session.status.value,
                progress=session.progress,
                completed_chunks=len(session.uploaded_chunks),
                total_chunks=session.total_chunks,
                current_chunk=index,
                retries=result.retries,
                is_resuming=is_resuming,
            ))
        return result
