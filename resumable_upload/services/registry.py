"""
Registry of uploads running in this process, keyed by session id
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from ..core.exceptions import SessionBusyError
from ..models.session import UploadSession

logger = logging.getLogger(__name__)


@dataclass
class ActiveUpload:
    session_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    session: Optional[UploadSession] = None


class SessionRegistry:
    """
    One owner per session id. A second claim on a held id fails fast with
    SessionBusyError instead of waiting. Cancel requests never claim; they
    only flag the current owner.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: Dict[str, ActiveUpload] = {}

    async def acquire(self, session_id: str, session: Optional[UploadSession] = None) -> ActiveUpload:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            raise SessionBusyError(f"Session {session_id} is busy with another operation")
        await lock.acquire()

        entry = ActiveUpload(session_id=session_id, session=session)
        self._active[session_id] = entry
        return entry

    def release(self, session_id: str) -> None:
        self._active.pop(session_id, None)
        lock = self._locks.pop(session_id, None)
        if lock is not None and lock.locked():
            lock.release()

    @asynccontextmanager
    async def claim(self, session_id: str, session: Optional[UploadSession] = None) -> AsyncIterator[ActiveUpload]:
        entry = await self.acquire(session_id, session)
        try:
            yield entry
        finally:
            self.release(session_id)

    def request_cancel(self, session_id: str) -> bool:
        entry = self._active.get(session_id)
        if entry is None:
            return False
        entry.cancel_event.set()
        logger.info(f"🛑 Cancel requested for active upload {session_id}")
        return True

    def get(self, session_id: str) -> Optional[ActiveUpload]:
        return self._active.get(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def active_ids(self) -> List[str]:
        return list(self._active)
