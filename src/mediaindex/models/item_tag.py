from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from mediaindex.models import Base


class ItemTag(Base):
    __tablename__ = "item_tags"
    __table_args__ = (UniqueConstraint("item_id", "tag", name="uq_item_tags_item_tag"),)

    id = Column(Integer, primary_key=True)
    item_id = Column(String(64), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    tag = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
