"""Chunked upload orchestrator with parallel workers and checksum verification."""
import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union
from uuid import uuid4

from ..core.config import settings
from ..core.exceptions import (
    ProtocolError,
    SessionBusyError,
    SessionNotFoundError,
    UploadCancelledError,
    UploadError,
    UploadFailedError,
)
from ..models.session import UploadSession, UploadStatus
from ..schemas.upload import CompleteUploadResponse, InitUploadRequest, ProgressEvent
from .completion import CompletionHandshake
from .hashing import hash_file
from .planner import plan_chunks
from .progress import ProgressChannel
from .registry import ActiveUpload, SessionRegistry
from .resume import ResumeCoordinator, ResumeStatus
from .resume_store import ResumeStore
from .scheduler import UploadScheduler
from .source import FileSource
from .transport import ChunkTransport, UploadApiClient

logger = logging.getLogger(__name__)


class UploadHandle:
    """A running upload: its session, its progress stream and its outcome."""

    def __init__(self, session: UploadSession, channel: ProgressChannel,
                 task: "asyncio.Task[CompleteUploadResponse]", uploader: "ChunkedUploader"):
        self.session = session
        self._channel = channel
        self._task = task
        self._uploader = uploader

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def status(self) -> UploadStatus:
        return self.session.status

    @property
    def done(self) -> bool:
        return self._task.done()

    def events(self) -> AsyncIterator[ProgressEvent]:
        """Progress events until the terminal one."""
        return self._channel.events()

    async def wait(self) -> CompleteUploadResponse:
        """Result of the completion handshake, or the error that ended the session."""
        return await self._task

    async def cancel(self) -> bool:
        return await self._uploader.cancel(self.session_id)


class ChunkedUploader:
    """
    Client for uploading large files in chunks with resumable sessions.

    Composes the hashing, planning, transport, scheduling, resume and
    completion pieces. The registry and store are injected so several
    uploaders (or tests) can share or isolate them.
    """

    def __init__(
        self,
        api: Optional[UploadApiClient] = None,
        store: Optional[ResumeStore] = None,
        registry: Optional[SessionRegistry] = None,
        chunk_size: int = settings.CHUNK_SIZE,
        concurrency: int = settings.MAX_CONCURRENCY,
        max_retries: int = settings.MAX_RETRIES,
        retry_base_delay: float = settings.RETRY_BASE_DELAY,
        hash_algorithm: str = settings.HASH_ALGORITHM,
        transport: Optional[ChunkTransport] = None,
    ):
        self.api = api or UploadApiClient()
        self.store = store or ResumeStore()
        self.registry = registry or SessionRegistry()
        self.chunk_size = chunk_size
        self.hash_algorithm = hash_algorithm
        self.owner_id = uuid4().hex

        self.transport = transport or ChunkTransport(
            self.api, max_retries=max_retries, retry_base_delay=retry_base_delay,
            hash_algorithm=hash_algorithm,
        )
        self.scheduler = UploadScheduler(self.transport, concurrency=concurrency)
        self.handshake = CompletionHandshake(self.api)
        self.coordinator = ResumeCoordinator(self.api, self.store, self.scheduler, self.handshake)

    # ------------------------------------------------------------------
    # New uploads
    # ------------------------------------------------------------------

    async def start_upload(
        self,
        file_path: Union[str, Path],
        metadata: Optional[Dict[str, Any]] = None,
        destination_token: Optional[str] = None,
        content_type: Optional[str] = None,
        persist: bool = True,
    ) -> UploadHandle:
        """
        Plan, hash and initialize a session, then upload in the background.

        Returns once the backend has issued a session id.
        """
        source = FileSource(file_path)
        plan = plan_chunks(source.size, self.chunk_size)

        logger.info(f"Calculating file hash for {source.name} ({source.size / (1024 * 1024):.2f} MB)...")
        file_hash = hash_file(source, self.hash_algorithm)
        logger.info(f"✓ File {self.hash_algorithm.upper()}: {file_hash[:16]}...")

        request = InitUploadRequest(
            file_name=source.name,
            file_size=source.size,
            total_chunks=plan.total_chunks,
            chunk_size=plan.chunk_size,
            file_hash=file_hash,
            hash_algorithm=self.hash_algorithm,
            content_type=content_type or source.guess_content_type(),
            metadata=metadata or {},
        )
        init = await self.api.init_upload(request)
        if init.total_chunks != plan.total_chunks:
            raise ProtocolError(
                f"Backend planned {init.total_chunks} chunks for {source.name}, expected {plan.total_chunks}"
            )

        session = UploadSession(
            id=init.session_id,
            file_name=source.name,
            file_size=source.size,
            content_type=request.content_type,
            file_hash=file_hash,
            plan=plan,
            metadata=dict(request.metadata),
            destination_token=destination_token,
        )
        logger.info(f"✓ Session initialized: {session.id} ({session.total_chunks} chunks)")

        entry = await self.registry.acquire(session.id, session)
        if persist:
            try:
                self.store.save(session, source_path=str(source.path.resolve()),
                                source_mtime=source.mtime, hash_algorithm=self.hash_algorithm)
                self.store.acquire_lease(session.id, self.owner_id)
            except Exception:
                self.registry.release(session.id)
                raise

        channel = ProgressChannel()
        channel.publish(self._event(session))

        task = asyncio.create_task(self._run(entry, session, source, channel, persist, is_resuming=False))
        return UploadHandle(session, channel, task, self)

    async def upload_file(
        self,
        file_path: Union[str, Path],
        metadata: Optional[Dict[str, Any]] = None,
        destination_token: Optional[str] = None,
        content_type: Optional[str] = None,
        persist: bool = True,
    ) -> CompleteUploadResponse:
        """Upload a file end to end and return the backend's artifact reference."""
        handle = await self.start_upload(file_path, metadata, destination_token, content_type, persist)
        return await handle.wait()

    # ------------------------------------------------------------------
    # Resume / cancel / inspection
    # ------------------------------------------------------------------

    async def resume(self, session_id: str, file_path: Union[str, Path, None] = None) -> UploadHandle:
        """Resume from persisted state, uploading only chunks the backend lacks."""
        entry = await self.registry.acquire(session_id)
        leased = False
        try:
            record = self.coordinator.load_record(session_id)
            if not self.store.acquire_lease(session_id, self.owner_id):
                raise SessionBusyError(f"Session {session_id} is being driven by another process")
            leased = True

            source = FileSource(file_path) if file_path is not None else None
            session, source = await self.coordinator.prepare(record, source)
        except BaseException:
            if leased:
                self.store.release_lease(session_id, self.owner_id)
            self.registry.release(session_id)
            raise

        entry.session = session
        channel = ProgressChannel()
        channel.publish(self._event(session, is_resuming=True))

        task = asyncio.create_task(self._run(entry, session, source, channel, True, is_resuming=True))
        return UploadHandle(session, channel, task, self)

    async def cancel(self, session_id: str) -> bool:
        """
        Cancel an upload.

        A run in this process is only signalled: no new chunks start, the
        current batch settles, then the run itself notifies the backend.
        Returns True in that case. An idle session is cancelled on the
        backend and its resume state dropped right away.
        """
        if self.registry.request_cancel(session_id):
            return True

        async with self.registry.claim(session_id):
            record = self.store.get(session_id)
            if record is not None and not self.store.acquire_lease(session_id, self.owner_id):
                raise SessionBusyError(f"Session {session_id} is being driven by another process")
            try:
                await self.api.cancel_upload(session_id)
                logger.info(f"🛑 Cancelled upload session {session_id}")
            except SessionNotFoundError:
                logger.info(f"Session {session_id} already gone on the backend")
            if record is not None:
                self.store.delete(session_id)
        return False

    async def resume_status(self, session_id: str) -> ResumeStatus:
        return await self.coordinator.status(session_id)

    def list_resumable(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.store.list()]

    def active_sessions(self) -> List[str]:
        return self.registry.active_ids()

    async def aclose(self) -> None:
        await self.api.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        entry: ActiveUpload,
        session: UploadSession,
        source: FileSource,
        channel: ProgressChannel,
        persisted: bool,
        is_resuming: bool,
    ) -> CompleteUploadResponse:
        checkpoint = self._checkpoint if persisted else None
        try:
            if persisted:
                self.store.refresh_lease(session.id, self.owner_id, status=UploadStatus.UPLOADING.value)

            if is_resuming:
                result = await self.coordinator.drive(session, source, channel, entry.cancel_event, checkpoint)
            else:
                await self.scheduler.run(session, source, channel, entry.cancel_event, checkpoint)
                result = await self.handshake.complete(session)

            if persisted:
                self.store.delete(session.id)
            channel.publish(self._event(session, is_resuming=is_resuming, artifact=result))
            return result

        except UploadCancelledError:
            await self._finish_cancel(session, persisted)
            channel.publish(self._event(session, is_resuming=is_resuming))
            raise

        except UploadFailedError as e:
            self._finish_failure(session, persisted)
            channel.publish(self._event(session, is_resuming=is_resuming, error=str(e),
                                        failed_chunks=sorted(e.failed_chunks)))
            raise

        except UploadError as e:
            if not session.status.is_terminal:
                session.error = str(e)
                session.transition(UploadStatus.FAILED)
            self._finish_failure(session, persisted)
            channel.publish(self._event(session, is_resuming=is_resuming, error=str(e)))
            raise UploadFailedError(session.id, str(e), cause=e) from e

        finally:
            if persisted:
                self.store.release_lease(session.id, self.owner_id)
            self.registry.release(session.id)
            channel.close()

    def _checkpoint(self, session: UploadSession) -> None:
        self.store.refresh_lease(session.id, self.owner_id)

    async def _finish_cancel(self, session: UploadSession, persisted: bool) -> None:
        if not session.status.is_terminal:
            session.transition(UploadStatus.CANCELLED)
        try:
            await self.api.cancel_upload(session.id)
        except UploadError as e:
            logger.warning(f"⚠️ Backend was not notified of cancel for {session.id}: {e}")
        if persisted:
            self.store.delete(session.id)
        logger.info(
            f"🛑 Upload {session.id} cancelled after "
            f"{len(session.uploaded_chunks)}/{session.total_chunks} chunks"
        )

    def _finish_failure(self, session: UploadSession, persisted: bool) -> None:
        if persisted:
            self.store.update_status(session.id, UploadStatus.FAILED.value)
            logger.error(
                f"⚠ Upload {session.id} failed: {session.error}. "
                f"Resume with: resumable-upload resume {session.id}"
            )
        else:
            logger.error(f"⚠ Upload {session.id} failed: {session.error}")

    @staticmethod
    def _event(
        session: UploadSession,
        is_resuming: bool = False,
        error: Optional[str] = None,
        failed_chunks: Optional[List[int]] = None,
        artifact: Optional[CompleteUploadResponse] = None,
    ) -> ProgressEvent:
        return ProgressEvent(
            session_id=session.id,
            status=session.status.value,
            progress=session.progress,
            completed_chunks=len(session.uploaded_chunks),
            total_chunks=session.total_chunks,
            is_resuming=is_resuming,
            error=error,
            failed_chunks=failed_chunks or [],
            artifact=artifact,
        )
