"""
Persisted resume descriptor: identifiers, sizes and plan parameters.
Raw file bytes are never stored here.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Float, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class ResumeRecord(Base):
    """Upload session metadata kept across process restarts."""

    __tablename__ = "resume_records"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), default="application/octet-stream")
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    file_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    hash_algorithm: Mapped[str] = mapped_column(String(20), default="md5")
    source_path: Mapped[Optional[str]] = mapped_column(String(4096), nullable=True)
    source_mtime: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    destination_token: Mapped[Optional[str]] = mapped_column(String(4096), nullable=True)
    caller_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(20), default="initialized", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Cross-process fail-fast: one owner per session id at a time
    lease_owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "content_type": self.content_type,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
            "file_hash": self.file_hash,
            "hash_algorithm": self.hash_algorithm,
            "source_path": self.source_path,
            "source_mtime": self.source_mtime,
            "destination_token": self.destination_token,
            "caller_metadata": dict(self.caller_metadata or {}),
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self):
        return f"<ResumeRecord(session_id={self.session_id}, file_name={self.file_name}, status={self.status})>"
