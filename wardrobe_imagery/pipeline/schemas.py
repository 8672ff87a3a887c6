"""
Pydantic schemas for the imagery pipeline requests and responses.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class UploadRequest(BaseModel):
    """Flow A input: a user-supplied image."""
    owner_id: str
    image_bytes: bytes = Field(..., repr=False)
    declared_mime_type: str
    remove_background: bool = True
    item_id: Optional[str] = None


class GenerateRequest(BaseModel):
    """Flow B input: a text prompt for an existing wardrobe item."""
    wardrobe_item_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1, max_length=2000)
    run_async: bool = False

    @field_validator("prompt", "wardrobe_item_id", "user_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class ImageProcessingResult(BaseModel):
    """Flow A response, including the partial-success shape."""
    success: bool = True
    image_url: str
    storage_path: Optional[str] = None
    background_removal_status: Optional[str] = None  # skipped, completed, failed, not_requested
    message: Optional[str] = None


class GenerationResponse(BaseModel):
    """Flow B response."""
    success: bool = True
    image_url: str
    storage_path: str
    generation_duration_ms: int
    cost_units: int


class TaskAcceptedResponse(BaseModel):
    """Returned when Flow B is handed to a Celery worker."""
    success: bool = True
    status: str = "processing"
    task_id: str


class ItemStatusResponse(BaseModel):
    """Status slice of a wardrobe item."""
    success: bool = True
    id: str
    processing_status: str
    processing_started_at: Optional[str] = None
    processing_completed_at: Optional[str] = None
    image_url: Optional[str] = None
    is_terminal: bool
