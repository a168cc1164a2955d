"""Generation job model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class GenerationJob(Base):
    """Talking-dog video generation submitted to the external provider."""

    __tablename__ = "generation_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    operation_name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="processing", index=True)
    prompt = Column(Text, nullable=False)
    source_image_ref = Column(String, nullable=True)
    result_url = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    admission_mode = Column(String, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    aspect_ratio = Column(String, nullable=True)
    generate_audio = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    owner = relationship("User", back_populates="generation_jobs")
