"""
Reference upload backend: chunk storage on local disk, session state in memory.

Implements the five-operation contract the client drives. Used for local
development and end-to-end tests.
"""
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from fastapi import APIRouter, Body, Depends, File, Header, HTTPException, Request, UploadFile

from ..core.config import settings
from ..schemas.upload import (
    CancelUploadResponse,
    ChunkAck,
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    ProgressResponse,
)
from ..services.hashing import hash_bytes, new_hasher

logger = logging.getLogger(__name__)

router = APIRouter()

ASSEMBLY_BLOCK_SIZE = 65536  # 64KB


@dataclass
class ServerSession:
    session_id: str
    file_name: str
    file_size: int
    chunk_size: int
    total_chunks: int
    file_hash: str
    hash_algorithm: str
    content_type: str
    metadata: Dict[str, Any]
    temp_dir: Path
    expires_at: datetime
    uploaded_chunks: Set[int] = field(default_factory=set)
    status: str = "in_progress"
    artifact: Optional[CompleteUploadResponse] = None

    def expected_chunk_size(self, index: int) -> int:
        return min(self.chunk_size, self.file_size - index * self.chunk_size)

    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.uploaded_chunks]

    @property
    def progress(self) -> float:
        if self.total_chunks == 0:
            return 100.0
        return round(len(self.uploaded_chunks) / self.total_chunks * 100, 2)


class ServerSessionStore:
    """In-memory session table. Expired sessions are purged on every init."""

    def __init__(
        self,
        temp_dir: str = settings.TEMP_UPLOAD_DIR,
        completed_dir: str = settings.COMPLETED_UPLOAD_DIR,
        max_upload_bytes: int = settings.MAX_UPLOAD_BYTES,
        ttl_hours: int = settings.SESSION_TTL_HOURS,
    ):
        self.temp_dir = Path(temp_dir)
        self.completed_dir = Path(completed_dir)
        self.max_upload_bytes = max_upload_bytes
        self.ttl = timedelta(hours=ttl_hours)
        self.sessions: Dict[str, ServerSession] = {}

    def ensure_dirs(self) -> None:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.completed_dir.mkdir(parents=True, exist_ok=True)

    def create(self, request: InitUploadRequest) -> ServerSession:
        self.purge_expired()
        session_id = str(uuid4())
        session_dir = self.temp_dir / session_id
        session_dir.mkdir(parents=True, exist_ok=True)

        session = ServerSession(
            session_id=session_id,
            file_name=Path(request.file_name).name,
            file_size=request.file_size,
            chunk_size=request.chunk_size,
            total_chunks=request.total_chunks,
            file_hash=request.file_hash,
            hash_algorithm=request.hash_algorithm,
            content_type=request.content_type,
            metadata=request.metadata,
            temp_dir=session_dir,
            expires_at=datetime.now(timezone.utc) + self.ttl,
        )
        self.sessions[session_id] = session
        return session

    def get(self, session_id: str) -> ServerSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Upload session not found or expired")
        if session.status != "completed" and session.expires_at < datetime.now(timezone.utc):
            self.discard(session_id)
            raise HTTPException(status_code=404, detail="Upload session not found or expired")
        return session

    def discard(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is not None and session.temp_dir.exists():
            shutil.rmtree(session.temp_dir, ignore_errors=True)

    def purge_expired(self) -> None:
        now = datetime.now(timezone.utc)
        expired = [
            s.session_id for s in self.sessions.values()
            if s.status != "completed" and s.expires_at < now
        ]
        for session_id in expired:
            logger.info(f"🧹 Purging expired upload session {session_id}")
            self.discard(session_id)


def get_store(request: Request) -> ServerSessionStore:
    return request.app.state.upload_store


@router.post("/upload/init", response_model=InitUploadResponse)
async def init_upload(request: InitUploadRequest, store: ServerSessionStore = Depends(get_store)):
    """
    Initialize a chunked upload session.

    Rejects files larger than the destination can hold (507) and chunk
    counts that do not match ceil(file_size / chunk_size) (400).
    """
    if request.file_size > store.max_upload_bytes:
        raise HTTPException(
            status_code=507,
            detail=f"File size {request.file_size} exceeds limit of {store.max_upload_bytes} bytes",
        )

    expected_chunks = (request.file_size + request.chunk_size - 1) // request.chunk_size
    if request.total_chunks != expected_chunks:
        raise HTTPException(
            status_code=400,
            detail=f"total_chunks must be {expected_chunks} for {request.file_size} bytes",
        )

    session = store.create(request)
    logger.info(
        f"Initialized upload session {session.session_id} for {session.file_name} "
        f"({session.total_chunks} chunks)"
    )
    return InitUploadResponse(
        session_id=session.session_id,
        total_chunks=session.total_chunks,
        chunk_size=session.chunk_size,
        expires_at=session.expires_at,
    )


@router.put("/upload/{session_id}/chunk/{chunk_index}", response_model=ChunkAck)
async def upload_chunk(
    session_id: str,
    chunk_index: int,
    file: UploadFile = File(...),
    x_chunk_hash: Optional[str] = Header(None),
    store: ServerSessionStore = Depends(get_store),
):
    """
    Upload a single chunk with checksum verification.

    Idempotent: uploading the same chunk twice overwrites the previous copy.
    """
    session = store.get(session_id)
    if session.status != "in_progress":
        raise HTTPException(status_code=400, detail=f"Upload session is {session.status}")

    if chunk_index < 0 or chunk_index >= session.total_chunks:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid chunk index. Must be between 0 and {session.total_chunks - 1}",
        )

    content = await file.read()
    expected_size = session.expected_chunk_size(chunk_index)
    if len(content) != expected_size:
        raise HTTPException(
            status_code=400,
            detail=f"Chunk {chunk_index} size mismatch: expected {expected_size}, got {len(content)}",
        )

    checksum = hash_bytes(content, session.hash_algorithm)
    if x_chunk_hash is None or checksum.lower() != x_chunk_hash.lower():
        logger.error(f"Checksum mismatch for chunk {chunk_index}: expected {x_chunk_hash}, got {checksum}")
        raise HTTPException(status_code=400, detail=f"Checksum mismatch for chunk {chunk_index}")

    (session.temp_dir / f"chunk_{chunk_index}").write_bytes(content)
    session.uploaded_chunks.add(chunk_index)

    logger.info(f"Uploaded chunk {chunk_index + 1}/{session.total_chunks} for session {session_id}")
    return ChunkAck(
        session_id=session_id,
        chunk_index=chunk_index,
        checksum=checksum,
        size=len(content),
        uploaded_chunks=len(session.uploaded_chunks),
        total_chunks=session.total_chunks,
        is_complete=not session.missing_chunks(),
    )


@router.get("/upload/{session_id}/progress", response_model=ProgressResponse)
async def get_upload_progress(session_id: str, store: ServerSessionStore = Depends(get_store)):
    """
    Get the durable progress of an upload session.

    Client uses this to resume from the failure point.
    """
    session = store.get(session_id)
    return ProgressResponse(
        session_id=session_id,
        uploaded_chunks=len(session.uploaded_chunks),
        total_chunks=session.total_chunks,
        missing_chunks=session.missing_chunks(),
        progress=session.progress,
        is_complete=not session.missing_chunks(),
    )


@router.post("/upload/{session_id}/complete", response_model=CompleteUploadResponse)
async def complete_upload(
    session_id: str,
    body: Optional[CompleteUploadRequest] = Body(None),
    store: ServerSessionStore = Depends(get_store),
):
    """
    Complete the upload: assemble chunks in order, verify the file hash.

    Safe to retry: a completed session returns its existing artifact.
    """
    session = store.get(session_id)

    if session.status == "completed" and session.artifact is not None:
        logger.info(f"Session {session_id} already completed")
        return session.artifact

    missing = session.missing_chunks()
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing chunks: {missing}")

    store.ensure_dirs()
    final_path = store.completed_dir / f"{session_id}_{session.file_name}"
    hasher = new_hasher(session.hash_algorithm)
    try:
        with open(final_path, "wb") as outfile:
            for index in range(session.total_chunks):
                chunk_path = session.temp_dir / f"chunk_{index}"
                if not chunk_path.exists():
                    raise HTTPException(status_code=500, detail=f"Chunk {index} file not found")
                with open(chunk_path, "rb") as infile:
                    while True:
                        block = infile.read(ASSEMBLY_BLOCK_SIZE)
                        if not block:
                            break
                        hasher.update(block)
                        outfile.write(block)
    except HTTPException:
        final_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        logger.error(f"Failed to assemble upload {session_id}: {e}")
        final_path.unlink(missing_ok=True)
        raise HTTPException(status_code=500, detail=f"Failed to assemble chunks: {e}")

    computed = hasher.hexdigest()
    if computed.lower() != session.file_hash.lower():
        logger.error(f"File hash mismatch for session {session_id}: expected {session.file_hash}, got {computed}")
        session.status = "failed"
        final_path.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail="File integrity check failed. Hash mismatch.")

    token = body.destination_token if body else None
    session.status = "completed"
    session.artifact = CompleteUploadResponse(
        session_id=session_id,
        status="completed",
        artifact_id=f"{'dest' if token else 'local'}_{uuid4().hex}",
        location=str(final_path),
        storage="destination" if token else "local",
        size=final_path.stat().st_size,
        message=f"File {session.file_name} uploaded successfully",
    )
    shutil.rmtree(session.temp_dir, ignore_errors=True)

    logger.info(f"Completed upload for session {session_id}, file saved to {final_path}")
    return session.artifact


@router.delete("/upload/{session_id}", response_model=CancelUploadResponse)
async def cancel_upload(session_id: str, store: ServerSessionStore = Depends(get_store)):
    """Cancel an upload session and clean up partial chunks."""
    store.get(session_id)
    store.discard(session_id)
    logger.info(f"Cancelled upload session {session_id}")
    return CancelUploadResponse(session_id=session_id)


@router.get("/sessions")
async def list_sessions(status: Optional[str] = None, store: ServerSessionStore = Depends(get_store)):
    """List upload sessions, optionally filtered by status."""
    sessions = [s for s in store.sessions.values() if status is None or s.status == status]
    return {
        "total": len(sessions),
        "sessions": [
            {
                "session_id": s.session_id,
                "file_name": s.file_name,
                "status": s.status,
                "progress": f"{len(s.uploaded_chunks)}/{s.total_chunks}",
                "expires_at": s.expires_at.isoformat(),
            }
            for s in sessions
        ],
    }
