"""
Pydantic schemas for the chunked upload protocol
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class InitUploadRequest(BaseModel):
    """Open a new upload session"""
    file_name: str = Field(..., min_length=1, max_length=512)
    file_size: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=0)
    chunk_size: int = Field(..., gt=0)
    file_hash: str = Field(..., description="Digest of the whole file")
    hash_algorithm: str = "md5"
    content_type: str = "application/octet-stream"
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Caller metadata, passed through")


class InitUploadResponse(BaseModel):
    session_id: str
    total_chunks: int
    chunk_size: int
    expires_at: Optional[datetime] = None


class ChunkAck(BaseModel):
    session_id: str
    chunk_index: int
    checksum: str
    size: int
    uploaded_chunks: int
    total_chunks: int
    is_complete: bool


class ProgressResponse(BaseModel):
    """Durable server-side progress, used for resume"""
    session_id: str
    uploaded_chunks: int
    total_chunks: int
    missing_chunks: List[int]
    progress: float
    is_complete: bool


class CompleteUploadRequest(BaseModel):
    destination_token: Optional[str] = None


class CompleteUploadResponse(BaseModel):
    session_id: str
    status: str
    artifact_id: str
    location: str
    storage: str = "local"
    size: int = 0
    message: str = ""


class CancelUploadResponse(BaseModel):
    session_id: str
    status: str = "cancelled"


class ProgressEvent(BaseModel):
    """One update on an upload's progress channel"""
    session_id: str
    status: str
    progress: float = 0.0
    completed_chunks: int = 0
    total_chunks: int = 0
    current_chunk: Optional[int] = None
    retries: int = 0
    is_resuming: bool = False
    error: Optional[str] = None
    failed_chunks: List[int] = Field(default_factory=list)
    artifact: Optional[CompleteUploadResponse] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")
