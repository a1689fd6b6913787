"""
Durable local state for resumable uploads (SQLite via SQLAlchemy)
"""
import logging
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Iterator, List, Optional

from sqlalchemy import create_engine, or_, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import settings
from ..models.resume_record import Base, ResumeRecord, utcnow
from ..models.session import UploadSession

logger = logging.getLogger(__name__)


class ResumeStore:
    """
    Persists one descriptor per in-flight session: identifiers, sizes and
    plan parameters. Rows are removed on terminal success or cancel.

    Leases give fail-fast exclusion across processes: a row can be driven
    by one owner at a time, and a lease older than ``lease_seconds`` may be
    taken over.
    """

    def __init__(self, db_url: str = settings.RESUME_DB_URL,
                 lease_seconds: int = settings.SESSION_LEASE_SECONDS):
        self.lease_seconds = lease_seconds

        url = make_url(db_url)
        engine_kwargs = {}
        if url.get_backend_name() == "sqlite":
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url.database and url.database != ":memory:":
                # sqlite opens "~" literally
                path = Path(url.database).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                url = url.set(database=str(path))
            else:
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False,
                                         autoflush=False, expire_on_commit=False)
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _db(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save(self, session: UploadSession, source_path: Optional[str] = None,
             source_mtime: Optional[float] = None,
             hash_algorithm: str = settings.HASH_ALGORITHM) -> ResumeRecord:
        record = ResumeRecord(
            session_id=session.id,
            file_name=session.file_name,
            file_size=session.file_size,
            content_type=session.content_type,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            file_hash=session.file_hash,
            hash_algorithm=hash_algorithm,
            source_path=source_path,
            source_mtime=source_mtime,
            destination_token=session.destination_token,
            caller_metadata=dict(session.metadata),
            status=session.status.value,
        )
        with self._db() as db:
            db.merge(record)
        logger.info(f"💾 Saved resume state for {session.id} ({session.file_name})")
        return record

    def get(self, session_id: str) -> Optional[ResumeRecord]:
        with self._db() as db:
            return db.get(ResumeRecord, session_id)

    def list(self) -> List[ResumeRecord]:
        with self._db() as db:
            return list(db.scalars(select(ResumeRecord).order_by(ResumeRecord.created_at.desc())))

    def update_status(self, session_id: str, status: str) -> bool:
        with self._db() as db:
            result = db.execute(
                update(ResumeRecord)
                .where(ResumeRecord.session_id == session_id)
                .values(status=status, updated_at=utcnow())
            )
            return result.rowcount == 1

    def delete(self, session_id: str) -> bool:
        with self._db() as db:
            record = db.get(ResumeRecord, session_id)
            if record is None:
                return False
            db.delete(record)
        logger.info(f"🧹 Removed resume state for {session_id}")
        return True

    def acquire_lease(self, session_id: str, owner: str) -> bool:
        """Take the lease if it is free, already ours, or expired. Atomic at SQL level."""
        now = utcnow()
        with self._db() as db:
            result = db.execute(
                update(ResumeRecord)
                .where(
                    ResumeRecord.session_id == session_id,
                    or_(
                        ResumeRecord.lease_owner.is_(None),
                        ResumeRecord.lease_owner == owner,
                        ResumeRecord.lease_expires_at < now,
                    ),
                )
                .values(lease_owner=owner,
                        lease_expires_at=now + timedelta(seconds=self.lease_seconds))
            )
            return result.rowcount == 1

    def refresh_lease(self, session_id: str, owner: str, status: Optional[str] = None) -> bool:
        values = {"lease_expires_at": utcnow() + timedelta(seconds=self.lease_seconds)}
        if status is not None:
            values["status"] = status
            values["updated_at"] = utcnow()
        with self._db() as db:
            result = db.execute(
                update(ResumeRecord)
                .where(ResumeRecord.session_id == session_id, ResumeRecord.lease_owner == owner)
                .values(**values)
            )
            return result.rowcount == 1

    def release_lease(self, session_id: str, owner: str) -> None:
        with self._db() as db:
            db.execute(
                update(ResumeRecord)
                .where(ResumeRecord.session_id == session_id, ResumeRecord.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
            )
