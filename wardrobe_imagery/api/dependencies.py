"""
FastAPI Dependencies for the Imagery API

Provides dependency injection for:
- Caller identity (Supabase bearer token)
- Status tracker (per-request, shared session factory)
- Imagery pipeline (per-request; no state survives a run)
"""

from typing import Optional

from fastapi import Depends, Header

from wardrobe_imagery.core.auth import AuthProvider, CallerIdentity, extract_bearer_token
from wardrobe_imagery.core.config import PipelineConfig, settings
from wardrobe_imagery.core.database import async_session_maker
from wardrobe_imagery.core.logging import get_logger
from wardrobe_imagery.core.storage import IStorage, get_storage
from wardrobe_imagery.engines.replicate import (
    IBackgroundRemover,
    IImageGenerator,
    ReplicateBackgroundRemovalClient,
    ReplicateGenerationClient,
)
from wardrobe_imagery.pipeline.orchestrator import ImagePipeline
from wardrobe_imagery.pipeline.status import StatusTracker

logger = get_logger(__name__)


# =============================================================================
# Authentication
# =============================================================================

def get_auth_provider() -> AuthProvider:
    return AuthProvider.from_settings(settings)


async def get_current_user(
    authorization: Optional[str] = Header(None),
    auth: AuthProvider = Depends(get_auth_provider)
) -> CallerIdentity:
    """Resolve the caller from `Authorization: Bearer <token>`; 401 otherwise."""
    token = extract_bearer_token(authorization)
    return await auth.get_user(token)


# =============================================================================
# Pipeline Components
# =============================================================================

def get_status_tracker() -> StatusTracker:
    return StatusTracker(async_session_maker)


def get_image_generator() -> IImageGenerator:
    return ReplicateGenerationClient.from_settings(settings)


def get_background_remover() -> IBackgroundRemover:
    return ReplicateBackgroundRemovalClient.from_settings(settings)


def get_pipeline(
    storage: IStorage = Depends(get_storage),
    tracker: StatusTracker = Depends(get_status_tracker),
    generator: IImageGenerator = Depends(get_image_generator),
    remover: IBackgroundRemover = Depends(get_background_remover)
) -> ImagePipeline:
    """Returns a fresh ImagePipeline wired with per-request components."""
    return ImagePipeline(
        config=PipelineConfig.from_settings(settings),
        storage=storage,
        tracker=tracker,
        generator=generator,
        remover=remover,
    )
