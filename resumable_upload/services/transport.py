"""
HTTP client for the upload backend and the per-chunk transport with retries
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..core.config import settings
from ..core.exceptions import (
    ChunkRejectedError,
    ChunkUploadError,
    InsufficientStorageError,
    ProtocolError,
    SessionNotFoundError,
    TransientTransportError,
    UploadError,
)
from ..models.session import UploadSession
from ..schemas.upload import (
    CancelUploadResponse,
    ChunkAck,
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    ProgressResponse,
)
from .hashing import hash_bytes
from .source import FileSource

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CHUNK_HASH_HEADER = "X-Chunk-Hash"


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)


def raise_for_upload_status(response: httpx.Response, chunk_request: bool = False) -> None:
    """Map a non-2xx response onto the upload error taxonomy."""
    if response.is_success:
        return

    code = response.status_code
    detail = f"{code} {_error_detail(response)}"

    if code in (404, 410):
        raise SessionNotFoundError(f"Upload session not found or expired: {detail}", code)
    if code in (413, 507):
        raise InsufficientStorageError(f"Insufficient destination storage: {detail}", code)
    if code >= 500 or code in (408, 429):
        raise TransientTransportError(f"Server temporarily unavailable: {detail}", code)
    if chunk_request and code in (400, 422):
        raise ChunkRejectedError(f"Chunk rejected: {detail}", code)
    raise ProtocolError(f"Request rejected: {detail}", code)


class UploadApiClient:
    """
    Client for the five backend operations: init, upload chunk, progress,
    complete, cancel.

    Pass ``client`` to reuse an existing ``httpx.AsyncClient`` (tests mount
    the reference backend through ``httpx.ASGITransport``).
    """

    def __init__(
        self,
        api_url: str = settings.API_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        chunk_timeout: float = settings.CHUNK_TIMEOUT,
        complete_timeout: float = settings.COMPLETE_TIMEOUT,
    ):
        self.api_url = api_url.rstrip("/")
        self.chunk_timeout = chunk_timeout
        self.complete_timeout = complete_timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "UploadApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        model: Type[ModelT],
        timeout: float,
        chunk_request: bool = False,
        **kwargs: Any,
    ) -> ModelT:
        url = f"{self.api_url}{path}"
        try:
            # httpx timeouts are per phase; wait_for bounds the whole attempt
            response = await asyncio.wait_for(
                self.client.request(method, url, timeout=timeout, **kwargs), timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientTransportError(f"Timeout on {method} {path} after {timeout:.1f}s") from e
        except httpx.TimeoutException as e:
            raise TransientTransportError(f"Timeout on {method} {path}: {e!r}") from e
        except httpx.TransportError as e:
            raise TransientTransportError(f"Network error on {method} {path}: {e!r}") from e

        raise_for_upload_status(response, chunk_request=chunk_request)

        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProtocolError(f"Malformed response to {method} {path}: {e}") from e

    async def init_upload(self, request: InitUploadRequest) -> InitUploadResponse:
        """Initialize upload session and get session ID."""
        return await self._request(
            "POST", "/upload/init", InitUploadResponse,
            timeout=self.chunk_timeout,
            json=request.model_dump(mode="json"),
        )

    async def upload_chunk(
        self, session_id: str, chunk_index: int, data: bytes, chunk_hash: str
    ) -> ChunkAck:
        """Upload a single chunk with its checksum."""
        return await self._request(
            "PUT", f"/upload/{session_id}/chunk/{chunk_index}", ChunkAck,
            timeout=self.chunk_timeout,
            chunk_request=True,
            files={"file": (f"chunk_{chunk_index}", data, "application/octet-stream")},
            headers={CHUNK_HASH_HEADER: chunk_hash},
        )

    async def get_progress(self, session_id: str) -> ProgressResponse:
        """Get durable upload progress."""
        return await self._request(
            "GET", f"/upload/{session_id}/progress", ProgressResponse,
            timeout=self.chunk_timeout,
        )

    async def complete_upload(
        self, session_id: str, destination_token: Optional[str] = None
    ) -> CompleteUploadResponse:
        """Ask the backend to assemble the chunks."""
        body = CompleteUploadRequest(destination_token=destination_token)
        return await self._request(
            "POST", f"/upload/{session_id}/complete", CompleteUploadResponse,
            timeout=self.complete_timeout,
            json=body.model_dump(mode="json"),
        )

    async def cancel_upload(self, session_id: str) -> CancelUploadResponse:
        """Cancel an upload session and release server-side state."""
        return await self._request(
            "DELETE", f"/upload/{session_id}", CancelUploadResponse,
            timeout=self.chunk_timeout,
        )


@dataclass
class ChunkResult:
    index: int
    checksum: str
    size: int
    retries: int


class ChunkTransport:
    """
    Uploads exactly one chunk, retrying transient failures.

    Attempt n (1-based retry number) waits ``n * retry_base_delay`` before
    going out. Bytes are re-read and re-hashed on every attempt. Anything
    that leaves this class is fatal for the chunk.
    """

    def __init__(
        self,
        api: UploadApiClient,
        max_retries: int = settings.MAX_RETRIES,
        retry_base_delay: float = settings.RETRY_BASE_DELAY,
        hash_algorithm: str = settings.HASH_ALGORITHM,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.hash_algorithm = hash_algorithm
        self._sleep = sleep

    async def upload(self, session: UploadSession, source: FileSource, index: int) -> ChunkResult:
        chunk = session.plan.chunk(index)
        retries = 0

        while True:
            try:
                data = source.read_range(chunk.start, chunk.end)
                checksum = hash_bytes(data, self.hash_algorithm)
                ack = await self.api.upload_chunk(session.id, index, data, checksum)
                if ack.chunk_index != index or ack.checksum.lower() != checksum.lower():
                    raise ChunkRejectedError(
                        f"Backend acknowledged chunk {ack.chunk_index} ({ack.checksum}), "
                        f"expected chunk {index} ({checksum})"
                    )
            except UploadError as e:
                if not e.retryable or retries >= self.max_retries:
                    logger.error(
                        f"❌ Chunk {index} of {session.id} failed "
                        f"(attempt {retries + 1}/{self.max_retries + 1}): {e}"
                    )
                    raise ChunkUploadError(index, e, retries=retries) from e

                retries += 1
                session.record_retry(index)
                delay = retries * self.retry_base_delay
                logger.warning(
                    f"🔁 Retrying chunk {index} of {session.id} in {delay:.1f}s "
                    f"(retry {retries}/{self.max_retries}): {e}"
                )
                await self._sleep(delay)
                continue

            logger.debug(f"✓ Chunk {index} of {session.id} acknowledged ({len(data)} bytes)")
            return ChunkResult(index=index, checksum=checksum, size=len(data), retries=retries)
