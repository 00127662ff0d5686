"""Application lock model for database-level process coordination."""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from mediaindex.models import Base


class ApplicationLock(Base):
    """Table to track application locks for coordinating index access.

    Only one process should hold a lock for a given lock_name at a time.
    The sync engine takes the "sync" lock for the whole run so two jobs
    never write the same index concurrently.
    """
    __tablename__ = "application_locks"

    id = Column(Integer, primary_key=True)
    lock_name = Column(String(255), unique=True, nullable=False, index=True)
    process_id = Column(Integer, nullable=False)  # OS process ID
    hostname = Column(String(255), nullable=False)  # Machine hostname
    purpose = Column(String(32), nullable=True)  # sync mode holding the lock
    acquired_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
    expires_at = Column(DateTime, nullable=True)  # Optional expiration time
