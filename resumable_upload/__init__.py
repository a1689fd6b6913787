"""Chunked, resumable, integrity-verified file uploads."""
from .models.session import UploadSession, UploadStatus
from .schemas.upload import CompleteUploadResponse, ProgressEvent
from .services.planner import Chunk, ChunkPlan, plan_chunks
from .services.registry import SessionRegistry
from .services.resume import ResumeStatus
from .services.resume_store import ResumeStore
from .services.transport import UploadApiClient
from .services.uploader import ChunkedUploader, UploadHandle

__version__ = "1.0.0"

__all__ = [
    "ChunkedUploader",
    "UploadHandle",
    "UploadApiClient",
    "ResumeStore",
    "ResumeStatus",
    "SessionRegistry",
    "UploadSession",
    "UploadStatus",
    "ProgressEvent",
    "CompleteUploadResponse",
    "Chunk",
    "ChunkPlan",
    "plan_chunks",
]
