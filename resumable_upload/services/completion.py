"""
Completion handshake: ask the backend to assemble the acknowledged chunks
"""
import logging

from ..core.exceptions import InvalidTransitionError, UploadError, UploadFailedError
from ..models.session import UploadSession, UploadStatus
from ..schemas.upload import CompleteUploadResponse
from .transport import UploadApiClient

logger = logging.getLogger(__name__)


class CompletionHandshake:
    """Issues the complete call only for sessions with every chunk acknowledged."""

    def __init__(self, api: UploadApiClient):
        self.api = api

    async def complete(self, session: UploadSession) -> CompleteUploadResponse:
        if session.status != UploadStatus.CHUNKS_COMPLETED or not session.is_fully_uploaded:
            raise InvalidTransitionError(
                f"Session {session.id} is {session.status.value} with "
                f"{len(session.uploaded_chunks)}/{session.total_chunks} chunks; "
                f"refusing to complete"
            )

        session.transition(UploadStatus.COMPLETING)
        logger.info(f"🧩 Completing upload {session.id} ({session.total_chunks} chunks)...")

        try:
            result = await self.api.complete_upload(session.id, session.destination_token)
        except UploadError as e:
            session.error = f"Completion failed: {e}"
            session.transition(UploadStatus.FAILED)
            logger.error(f"❌ Completion of {session.id} failed: {e}")
            raise UploadFailedError(session.id, session.error, cause=e) from e

        session.artifact = result.model_dump()
        session.transition(UploadStatus.COMPLETED)
        logger.info(f"✅ Upload {session.id} completed: {result.location} ({result.storage})")
        return result
