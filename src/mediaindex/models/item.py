from sqlalchemy import BigInteger, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.sql import func
from mediaindex.models import Base


class Item(Base):
    __tablename__ = "items"

    # Item IDs are the on-disk directory name without its suffix. They are
    # assigned by the library, never by the index.
    id = Column(String(64), primary_key=True)
    name = Column(String(512), nullable=False, index=True)
    ext = Column(String(32), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    mtime = Column(DateTime, nullable=True, index=True)
    # image / video / audio / document / unknown
    media_type = Column(String(16), nullable=False, default="unknown", index=True)

    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)
    fps = Column(String(32), nullable=True)
    codec = Column(String(64), nullable=True)
    audio_codec = Column(String(64), nullable=True)
    bitrate = Column(BigInteger, nullable=True)
    sample_rate = Column(Integer, nullable=True)
    channels = Column(Integer, nullable=True)

    # EXIF-derived attributes. The raw EXIF block is kept as canonical JSON.
    exif_data = Column(Text, nullable=True)
    camera = Column(String(255), nullable=True)
    taken_at = Column(DateTime, nullable=True, index=True)
    gps_latitude = Column(Float, nullable=True)
    gps_longitude = Column(Float, nullable=True)
    gps_altitude = Column(Float, nullable=True)

    btime = Column(DateTime, nullable=True)
    url = Column(Text, nullable=False, default="")
    annotation = Column(Text, nullable=False, default="")

    # SHA-1 of the normalized metadata; changes iff the normalized record does.
    content_hash = Column(String(40), nullable=True)

    created_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
    updated_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
