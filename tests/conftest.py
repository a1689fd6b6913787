"""Pytest configuration and fixtures"""
import asyncio
import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from resumable_upload.api.endpoints import ServerSessionStore
from resumable_upload.core.exceptions import ChunkRejectedError, SessionNotFoundError
from resumable_upload.main import create_app
from resumable_upload.models.session import UploadSession
from resumable_upload.schemas.upload import (
    CancelUploadResponse,
    ChunkAck,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    ProgressResponse,
)
from resumable_upload.services.hashing import hash_file
from resumable_upload.services.planner import plan_chunks
from resumable_upload.services.registry import SessionRegistry
from resumable_upload.services.resume_store import ResumeStore
from resumable_upload.services.source import FileSource
from resumable_upload.services.transport import UploadApiClient
from resumable_upload.services.uploader import ChunkedUploader

MIB = 1024 * 1024


@dataclass
class FakeSession:
    total_chunks: int
    chunk_size: int
    file_hash: str
    chunks: Dict[int, bytes] = field(default_factory=dict)
    completed: Optional[CompleteUploadResponse] = None


class FakeBackend:
    """
    Scripted in-memory stand-in for UploadApiClient.

    ``failures[index]`` is a queue of exceptions raised by successive
    attempts on that chunk; ``complete_failures`` does the same for the
    completion call. In-flight uploads are counted for concurrency checks.
    """

    def __init__(self, chunk_delay: float = 0.0):
        self.chunk_delay = chunk_delay
        self.sessions: Dict[str, FakeSession] = {}
        self.failures: Dict[int, List[BaseException]] = {}
        self.complete_failures: List[BaseException] = []
        self.chunk_calls: List[Tuple[str, int, str]] = []
        self.timeline: List[Tuple[str, int]] = []
        self.complete_calls: List[Tuple[str, Optional[str]]] = []
        self.cancel_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_chunk_start: Optional[Callable[[int], None]] = None

    def _get(self, session_id: str) -> FakeSession:
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"Upload session not found or expired: {session_id}", 404)
        return self.sessions[session_id]

    def started_indices(self) -> List[int]:
        return [index for kind, index in self.timeline if kind == "start"]

    async def init_upload(self, request: InitUploadRequest) -> InitUploadResponse:
        session_id = f"sess-{len(self.sessions) + 1}"
        self.sessions[session_id] = FakeSession(
            total_chunks=request.total_chunks,
            chunk_size=request.chunk_size,
            file_hash=request.file_hash,
        )
        return InitUploadResponse(session_id=session_id, total_chunks=request.total_chunks,
                                  chunk_size=request.chunk_size)

    async def upload_chunk(self, session_id: str, chunk_index: int, data: bytes, chunk_hash: str) -> ChunkAck:
        self.chunk_calls.append((session_id, chunk_index, chunk_hash))
        self.timeline.append(("start", chunk_index))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_chunk_start is not None:
                self.on_chunk_start(chunk_index)
            await asyncio.sleep(self.chunk_delay)

            pending = self.failures.get(chunk_index)
            if pending:
                raise pending.pop(0)

            session = self._get(session_id)
            if hashlib.md5(data).hexdigest() != chunk_hash:
                raise ChunkRejectedError(f"Checksum mismatch for chunk {chunk_index}", 400)
            session.chunks[chunk_index] = data
            return ChunkAck(
                session_id=session_id,
                chunk_index=chunk_index,
                checksum=chunk_hash,
                size=len(data),
                uploaded_chunks=len(session.chunks),
                total_chunks=session.total_chunks,
                is_complete=len(session.chunks) == session.total_chunks,
            )
        finally:
            self.in_flight -= 1
            self.timeline.append(("end", chunk_index))

    async def get_progress(self, session_id: str) -> ProgressResponse:
        session = self._get(session_id)
        missing = [i for i in range(session.total_chunks) if i not in session.chunks]
        return ProgressResponse(
            session_id=session_id,
            uploaded_chunks=len(session.chunks),
            total_chunks=session.total_chunks,
            missing_chunks=missing,
            progress=100.0 if not missing else len(session.chunks) / session.total_chunks * 100,
            is_complete=not missing,
        )

    async def complete_upload(self, session_id: str, destination_token: Optional[str] = None) -> CompleteUploadResponse:
        self.complete_calls.append((session_id, destination_token))
        if self.complete_failures:
            raise self.complete_failures.pop(0)
        session = self._get(session_id)
        if len(session.chunks) != session.total_chunks:
            raise AssertionError("complete issued before every chunk was acknowledged")
        if session.completed is None:
            body = b"".join(session.chunks[i] for i in range(session.total_chunks))
            session.completed = CompleteUploadResponse(
                session_id=session_id,
                status="completed",
                artifact_id=f"artifact-{session_id}",
                location=f"memory://{session_id}",
                storage="destination" if destination_token else "local",
                size=len(body),
            )
        return session.completed

    async def cancel_upload(self, session_id: str) -> CancelUploadResponse:
        self.cancel_calls.append(session_id)
        self._get(session_id)
        del self.sessions[session_id]
        return CancelUploadResponse(session_id=session_id)

    async def aclose(self) -> None:
        pass


@pytest.fixture
def make_file(tmp_path: Path) -> Callable[..., Path]:
    """Create a file of random bytes."""
    def _make(size: int, name: str = "data.bin") -> Path:
        path = tmp_path / name
        with open(path, "wb") as f:
            remaining = size
            while remaining > 0:
                block = min(remaining, MIB)
                f.write(os.urandom(block))
                remaining -= block
        return path
    return _make


@pytest.fixture
def resume_store(tmp_path: Path) -> ResumeStore:
    return ResumeStore(db_url=f"sqlite:///{tmp_path / 'resume.db'}", lease_seconds=600)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_uploader(resume_store: ResumeStore):
    """Uploader wired to the given api with zero backoff."""
    def _make(api, chunk_size: int = 1024, concurrency: int = 3, max_retries: int = 3,
              store: Optional[ResumeStore] = None, registry: Optional[SessionRegistry] = None) -> ChunkedUploader:
        return ChunkedUploader(
            api=api,
            store=store or resume_store,
            registry=registry or SessionRegistry(),
            chunk_size=chunk_size,
            concurrency=concurrency,
            max_retries=max_retries,
            retry_base_delay=0,
        )
    return _make


@pytest.fixture
def open_session():
    """Initialize a session on ``api`` for ``path`` without the orchestrator."""
    async def _open(api, path: Path, chunk_size: int) -> Tuple[UploadSession, FileSource]:
        source = FileSource(path)
        plan = plan_chunks(source.size, chunk_size)
        file_hash = hash_file(source)
        init = await api.init_upload(InitUploadRequest(
            file_name=source.name,
            file_size=source.size,
            total_chunks=plan.total_chunks,
            chunk_size=chunk_size,
            file_hash=file_hash,
        ))
        session = UploadSession(
            id=init.session_id,
            file_name=source.name,
            file_size=source.size,
            content_type="application/octet-stream",
            file_hash=file_hash,
            plan=plan,
        )
        return session, source
    return _open


@pytest.fixture
def backend_store(tmp_path: Path) -> ServerSessionStore:
    return ServerSessionStore(
        temp_dir=str(tmp_path / "chunks"),
        completed_dir=str(tmp_path / "completed"),
        max_upload_bytes=50 * MIB,
        ttl_hours=24,
    )


@pytest.fixture
def backend_app(backend_store: ServerSessionStore):
    return create_app(backend_store)


@pytest.fixture
async def http_client(backend_app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=backend_app),
                                 base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def api_client(http_client: httpx.AsyncClient) -> UploadApiClient:
    return UploadApiClient(api_url="http://testserver", client=http_client)
