"""
Resume coordinator: rebuild a session from persisted state plus the
backend's authoritative chunk set, then upload only what is missing.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from ..core.exceptions import (
    ProtocolError,
    ResumeStateMissingError,
    SessionNotFoundError,
    SourceUnavailableError,
)
from ..models.resume_record import ResumeRecord
from ..models.session import UploadSession, UploadStatus
from ..schemas.upload import CompleteUploadResponse
from .completion import CompletionHandshake
from .hashing import hash_file
from .planner import plan_chunks
from .progress import ProgressChannel
from .resume_store import ResumeStore
from .scheduler import UploadScheduler
from .source import FileSource
from .transport import UploadApiClient

logger = logging.getLogger(__name__)


@dataclass
class ResumeStatus:
    """Answer to "can this session be resumed?" """
    session_id: str
    possible: bool
    reason: str
    total_chunks: int = 0
    missing_chunks: List[int] = field(default_factory=list)

    @property
    def uploaded_chunks(self) -> int:
        return self.total_chunks - len(self.missing_chunks)


class ResumeCoordinator:

    def __init__(
        self,
        api: UploadApiClient,
        store: ResumeStore,
        scheduler: UploadScheduler,
        handshake: CompletionHandshake,
    ):
        self.api = api
        self.store = store
        self.scheduler = scheduler
        self.handshake = handshake

    def load_record(self, session_id: str) -> ResumeRecord:
        record = self.store.get(session_id)
        if record is None:
            raise ResumeStateMissingError(
                f"No local resume state for {session_id}; cannot resume upload"
            )
        return record

    @staticmethod
    def open_source(record: ResumeRecord, source: Optional[FileSource] = None) -> FileSource:
        if source is None:
            if not record.source_path:
                raise SourceUnavailableError(
                    f"Cannot resume {record.session_id}: no source path recorded, pass the file explicitly"
                )
            source = FileSource(record.source_path)
        source.verify(record.file_size)

        # Same size but touched since the upload began: only the content hash can tell
        if record.source_mtime is not None and source.mtime != record.source_mtime and record.file_hash:
            logger.info(f"Source {source.path} was modified since {record.session_id} started, re-hashing...")
            if hash_file(source, record.hash_algorithm) != record.file_hash:
                raise SourceUnavailableError(
                    f"Cannot resume {record.session_id}: source {source.path} changed since the upload started"
                )
        return source

    async def prepare(
        self, record: ResumeRecord, source: Optional[FileSource] = None
    ) -> Tuple[UploadSession, FileSource]:
        """
        Reconstruct the session. The backend's progress report replaces
        whatever this process believed had been uploaded.
        """
        source = self.open_source(record, source)

        try:
            progress = await self.api.get_progress(record.session_id)
        except SessionNotFoundError:
            logger.warning(f"⚠️ Session {record.session_id} unknown to backend, dropping resume state")
            self.store.delete(record.session_id)
            raise

        plan = plan_chunks(record.file_size, record.chunk_size)
        if plan.total_chunks != record.total_chunks or progress.total_chunks != record.total_chunks:
            raise ProtocolError(
                f"Chunk plan mismatch for {record.session_id}: local {record.total_chunks}, "
                f"planned {plan.total_chunks}, backend {progress.total_chunks}"
            )

        missing = set(progress.missing_chunks)
        session = UploadSession(
            id=record.session_id,
            file_name=record.file_name,
            file_size=record.file_size,
            content_type=record.content_type,
            file_hash=record.file_hash or "",
            plan=plan,
            metadata=dict(record.caller_metadata or {}),
            destination_token=record.destination_token,
            uploaded_chunks={i for i in range(plan.total_chunks) if i not in missing},
        )
        logger.info(
            f"🔄 Resuming {session.id}: {len(session.uploaded_chunks)}/{session.total_chunks} "
            f"chunks already on server, {len(missing)} missing"
        )
        return session, source

    async def status(self, session_id: str) -> ResumeStatus:
        """Decide from the persisted record plus one progress query."""
        record = self.store.get(session_id)
        if record is None:
            return ResumeStatus(session_id, False, "no local resume state")

        try:
            self.open_source(record)
        except SourceUnavailableError as e:
            return ResumeStatus(session_id, False, str(e), total_chunks=record.total_chunks)

        try:
            progress = await self.api.get_progress(session_id)
        except SessionNotFoundError:
            return ResumeStatus(session_id, False, "session expired or unknown on server",
                                total_chunks=record.total_chunks)

        reason = "ready to complete" if not progress.missing_chunks else "chunks missing"
        return ResumeStatus(session_id, True, reason, total_chunks=progress.total_chunks,
                            missing_chunks=sorted(progress.missing_chunks))

    async def drive(
        self,
        session: UploadSession,
        source: FileSource,
        channel: Optional[ProgressChannel] = None,
        cancel_event: Optional[asyncio.Event] = None,
        checkpoint: Optional[Callable[[UploadSession], None]] = None,
    ) -> CompleteUploadResponse:
        if session.missing_chunks():
            await self.scheduler.run(session, source, channel, cancel_event, checkpoint,
                                     is_resuming=True)
        else:
            logger.info(f"✓ Every chunk of {session.id} is on the server, going straight to completion")
            session.transition(UploadStatus.UPLOADING)
            session.transition(UploadStatus.CHUNKS_COMPLETED)

        return await self.handshake.complete(session)
