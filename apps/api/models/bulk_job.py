"""Bulk content generation job model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BulkJob(Base):
    """Queued bulk generation job with an immutable config snapshot."""

    __tablename__ = "bulk_jobs"
    __table_args__ = (Index("ix_bulk_jobs_status_created", "status", "created_at"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_domain = Column(String, ForeignKey("shops.shop_domain"), nullable=False, index=True)
    type = Column(String, nullable=False)
    task = Column(String, nullable=False, default="content")
    status = Column(String, nullable=False, default="queued", index=True)
    config = Column(JSON, nullable=False, default=dict)
    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    failed_targets = Column(Integer, nullable=False, default=0)
    error_message = Column(String, nullable=True)
    # Set client-side so FIFO ordering keeps sub-second resolution.
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    shop = relationship("Shop", back_populates="bulk_jobs")
