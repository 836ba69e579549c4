"""Video model for certification course videos."""

from sqlalchemy import Boolean, Column, String, DateTime, Text
from sqlalchemy.sql import func
import uuid

from database import Base


TRANSCRIPTION_STATUSES = ("pending", "processing", "completed", "failed", "skipped")


class Video(Base):
    """Course video stored in object storage, with its transcription state."""

    __tablename__ = "videos"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    s3_key = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    transcript = Column(Text, nullable=True)
    captions_vtt_url = Column(String, nullable=True)
    captions_vtt_s3_key = Column(String, nullable=True)
    transcription_status = Column(String, nullable=False, default="pending", index=True)  # see TRANSCRIPTION_STATUSES
    transcription_error = Column(String, nullable=True)
    is_processed = Column(Boolean, nullable=False, default=False)
    ai_description_generated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
