"""
In-memory upload session and its state machine.

    initialized -> uploading -> chunks-completed -> completing -> completed
         any non-terminal state -> failed | cancelled

No transition skips a state. A failed session is never revived in place;
the resume coordinator builds a fresh session from persisted state.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..core.exceptions import InvalidTransitionError, PlanningError
from ..services.planner import ChunkPlan


class UploadStatus(str, Enum):
    INITIALIZED = "initialized"
    UPLOADING = "uploading"
    CHUNKS_COMPLETED = "chunks-completed"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED}
)

_ABORT = {UploadStatus.FAILED, UploadStatus.CANCELLED}

ALLOWED_TRANSITIONS = {
    UploadStatus.INITIALIZED: {UploadStatus.UPLOADING} | _ABORT,
    UploadStatus.UPLOADING: {UploadStatus.CHUNKS_COMPLETED} | _ABORT,
    UploadStatus.CHUNKS_COMPLETED: {UploadStatus.COMPLETING} | _ABORT,
    UploadStatus.COMPLETING: {UploadStatus.COMPLETED} | _ABORT,
}


@dataclass
class UploadSession:
    """All state for one in-flight transfer. Single writer: the orchestrator driving it."""

    id: str
    file_name: str
    file_size: int
    content_type: str
    file_hash: str
    plan: ChunkPlan
    metadata: Dict[str, Any] = field(default_factory=dict)
    destination_token: Optional[str] = None
    uploaded_chunks: Set[int] = field(default_factory=set)
    status: UploadStatus = UploadStatus.INITIALIZED
    retry_attempts: Dict[int, int] = field(default_factory=dict)
    error: Optional[str] = None
    artifact: Optional[Dict[str, Any]] = None

    @property
    def chunk_size(self) -> int:
        return self.plan.chunk_size

    @property
    def total_chunks(self) -> int:
        return self.plan.total_chunks

    @property
    def is_fully_uploaded(self) -> bool:
        return len(self.uploaded_chunks) == self.total_chunks

    @property
    def progress(self) -> float:
        if self.total_chunks == 0:
            return 100.0 if self.status in (UploadStatus.CHUNKS_COMPLETED, UploadStatus.COMPLETING,
                                            UploadStatus.COMPLETED) else 0.0
        return len(self.uploaded_chunks) / self.total_chunks * 100

    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.uploaded_chunks]

    def mark_chunk_uploaded(self, index: int) -> None:
        """Record a remote acknowledgement. Idempotent: the set never double-counts."""
        if index < 0 or index >= self.total_chunks:
            raise PlanningError(
                f"Chunk index {index} out of range (total_chunks={self.total_chunks})"
            )
        self.uploaded_chunks.add(index)
        self.retry_attempts.pop(index, None)

    def record_retry(self, index: int) -> int:
        self.retry_attempts[index] = self.retry_attempts.get(index, 0) + 1
        return self.retry_attempts[index]

    def transition(self, new_status: UploadStatus) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Session {self.id}: cannot go from {self.status.value} to {new_status.value}"
            )
        if new_status in (UploadStatus.CHUNKS_COMPLETED, UploadStatus.COMPLETED) \
                and not self.is_fully_uploaded:
            raise InvalidTransitionError(
                f"Session {self.id}: {len(self.uploaded_chunks)}/{self.total_chunks} "
                f"chunks acknowledged, cannot enter {new_status.value}"
            )
        self.status = new_status

    def __repr__(self):
        return (
            f"<UploadSession(id={self.id}, file_name={self.file_name}, status={self.status.value}, "
            f"uploaded={len(self.uploaded_chunks)}/{self.total_chunks})>"
        )
