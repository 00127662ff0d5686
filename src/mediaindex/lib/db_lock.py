"""Database-level locking so only one sync writes an index at a time.

The lock is a row in ``application_locks``; it lives in the index itself so
every process pointed at the same database sees it, wherever it runs.
"""
from __future__ import annotations

import os
import socket
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from mediaindex.lib.errors import MediaIndexError
from mediaindex.models.application_lock import ApplicationLock

SYNC_LOCK = "sync"


class LockAcquisitionError(MediaIndexError):
    """Raised when a lock cannot be acquired."""


def _utcnow() -> datetime:
    # Naive UTC, matching how DateTime columns are stored.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DatabaseLock:
    """Context manager for acquiring and releasing database locks.

    Usage:
        with DatabaseLock(session, SYNC_LOCK, purpose="incremental"):
            # run the sync
            pass

    A live lock held elsewhere fails the acquire at once; a sync never
    queues behind another one. Expired locks (a crashed run) are reclaimed.
    """

    def __init__(
        self,
        session: Session,
        lock_name: str,
        timeout_seconds: int = 3600,
        purpose: Optional[str] = None,
    ):
        """Initialize database lock.

        Args:
            session: SQLAlchemy session
            lock_name: Name of the lock (e.g. "sync")
            timeout_seconds: Lock expiration timeout (default: 1 hour)
            purpose: Free-form note stored with the lock (the sync mode)
        """
        self.session = session
        self.lock_name = lock_name
        self.timeout_seconds = timeout_seconds
        self.purpose = purpose
        self.lock_record: Optional[ApplicationLock] = None

    def acquire(self) -> None:
        """Take the lock or fail.

        Raises:
            LockAcquisitionError: the lock is held by a live process, or
                another process took it between the check and the insert.
        """
        holder = check_lock_exists(self.session, self.lock_name)
        if holder is not None:
            raise LockAcquisitionError(
                f"Lock '{self.lock_name}' is held by PID {holder.process_id} "
                f"on {holder.hostname} since {holder.acquired_at} ({holder.purpose or 'no purpose'})",
                details={"lock_name": self.lock_name, "process_id": holder.process_id},
            )

        record = ApplicationLock(
            lock_name=self.lock_name,
            process_id=os.getpid(),
            hostname=socket.gethostname(),
            purpose=self.purpose,
            expires_at=_utcnow() + timedelta(seconds=self.timeout_seconds),
        )
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise LockAcquisitionError(
                f"Lock '{self.lock_name}' was taken by another process", cause=exc
            ) from exc
        self.lock_record = record

    def release(self) -> None:
        """Release the lock."""
        if self.lock_record is None:
            return
        try:
            self.session.delete(self.lock_record)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.lock_record = None

    def __enter__(self) -> DatabaseLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def check_lock_exists(session: Session, lock_name: str) -> Optional[ApplicationLock]:
    """Return the live lock row for ``lock_name``, removing it if expired."""
    existing = session.query(ApplicationLock).filter_by(lock_name=lock_name).first()
    if existing is None:
        return None
    if existing.expires_at and existing.expires_at < _utcnow():
        session.delete(existing)
        try:
            session.commit()
        except Exception:
            # Another process may have reclaimed it first.
            session.rollback()
        return None
    return existing
