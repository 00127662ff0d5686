from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from mediaindex.models import Base


class ItemFolder(Base):
    __tablename__ = "item_folders"
    __table_args__ = (UniqueConstraint("item_id", "folder_id", name="uq_item_folders_item_folder"),)

    id = Column(Integer, primary_key=True)
    item_id = Column(String(64), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    folder_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
