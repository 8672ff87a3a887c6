"""
Wardrobe Item Model - Processing Status Slice

The item table itself is owned by the wardrobe CRUD layer. The pipeline
only reads `id`/`user_id` for ownership checks and writes the processing
status columns below.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, also on backends that store them naive (SQLite)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Timestamps must be timezone-aware")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ProcessingStatus(str, Enum):
    """Image processing states for a wardrobe item."""
    PENDING = "pending"           # Item created, no image work started
    PROCESSING = "processing"     # Pipeline is running
    COMPLETED = "completed"       # Final image stored
    FAILED = "failed"             # Run ended in error (image_url may hold a fallback)


TERMINAL_STATUSES = (ProcessingStatus.COMPLETED.value, ProcessingStatus.FAILED.value)


class WardrobeItem(SQLModel, table=True):
    """Slice of the wardrobe item record touched by the imagery pipeline."""
    __tablename__ = "wardrobe_items"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    user_id: str = Field(index=True)
    name: Optional[str] = None

    processing_status: str = Field(default=ProcessingStatus.PENDING.value)
    processing_started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    processing_completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    image_url: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def is_terminal(self) -> bool:
        return self.processing_status in TERMINAL_STATUSES

    def to_status_dict(self) -> Dict[str, Any]:
        """Convert to API status response format."""
        return {
            "id": self.id,
            "processing_status": self.processing_status,
            "processing_started_at": (
                self.processing_started_at.isoformat() if self.processing_started_at else None
            ),
            "processing_completed_at": (
                self.processing_completed_at.isoformat() if self.processing_completed_at else None
            ),
            "image_url": self.image_url,
        }
