"""
Exception hierarchy for chunked uploads.

Every error carries a ``retryable`` flag. Only the chunk transport reads it;
anything that escapes the transport is fatal for the session.
"""
from typing import Dict, Optional


class UploadError(Exception):
    """Base class for all upload errors"""

    retryable: bool = False


class PlanningError(UploadError):
    """Invalid file size / chunk size combination or bad hashing parameters"""


class SourceReadError(UploadError):
    """Source bytes could not be read (integrity error)"""


class SourceUnavailableError(UploadError):
    """Source file is gone or changed since the session was created; cannot resume"""


class TransientTransportError(UploadError):
    """Network failure, timeout or 5xx response"""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(UploadError):
    """Remote collaborator rejected the request"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionNotFoundError(ProtocolError):
    """Remote collaborator does not know the session (expired or never existed)"""


class ChunkRejectedError(ProtocolError):
    """Remote collaborator rejected a chunk (hash mismatch, bad index)"""


class InsufficientStorageError(UploadError):
    """Destination storage cannot hold the file"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidTransitionError(UploadError):
    """Session state machine does not allow the requested transition"""


class SessionBusyError(UploadError):
    """Another operation already owns this session id"""


class ResumeStateMissingError(UploadError):
    """No persisted descriptor exists for the session id"""


class ChunkUploadError(UploadError):
    """A single chunk failed after the transport gave up on it"""

    def __init__(self, chunk_index: int, cause: BaseException, retries: int = 0):
        super().__init__(
            f"Chunk {chunk_index} failed after {retries} retries: "
            f"{type(cause).__name__}: {cause}"
        )
        self.chunk_index = chunk_index
        self.cause = cause
        self.retries = retries


class UploadFailedError(UploadError):
    """Session-fatal failure"""

    def __init__(
        self,
        session_id: str,
        message: str,
        failed_chunks: Optional[Dict[int, ChunkUploadError]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.session_id = session_id
        self.failed_chunks = failed_chunks or {}
        self.cause = cause

    @property
    def error_class(self) -> Optional[str]:
        """Name of the underlying error class, for deciding whether resume is worth it"""
        if self.cause is not None:
            return type(self.cause).__name__
        for failure in self.failed_chunks.values():
            return type(failure.cause).__name__
        return None


class UploadCancelledError(UploadError):
    """Session ended by an explicit cancel request"""

    def __init__(self, session_id: str):
        super().__init__(f"Upload {session_id} was cancelled")
        self.session_id = session_id
