from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from mediaindex.models import Base


class CacheInfo(Base):
    """Key/value bookkeeping written by the sync engine.

    Known keys:
    - "last_refresh": ISO-8601 UTC timestamp of the last successful sync
    - "total_items": item count at the end of that sync
    """
    __tablename__ = "cache_info"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)
