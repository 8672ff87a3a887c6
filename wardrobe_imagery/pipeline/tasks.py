"""
Celery Tasks for the Imagery Pipeline

Runs prompt-to-image generation in a worker. The task builds its own
event loop, database engine and pipeline, so nothing is shared between runs. Retries are not
configured at the task level: the Replicate clients already retry
transient errors and every run ends in a terminal status.
"""

import asyncio
import traceback
from typing import Any, Dict

from wardrobe_imagery.core.celery_app import celery_app
from wardrobe_imagery.core.config import settings
from wardrobe_imagery.core.database import build_engine, build_session_maker
from wardrobe_imagery.core.exceptions import WardrobeImageryError
from wardrobe_imagery.core.logging import clear_item_context, get_logger, set_item_context
from wardrobe_imagery.pipeline.orchestrator import ImagePipeline
from wardrobe_imagery.pipeline.schemas import GenerateRequest

logger = get_logger(__name__)


def _run(coro_factory):
    """Run `coro_factory(pipeline)` on a fresh loop with a task-scoped engine."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_maker(engine)
    try:
        pipeline = ImagePipeline.from_settings(settings, session_factory=session_factory)
        return loop.run_until_complete(coro_factory(pipeline))
    finally:
        loop.run_until_complete(engine.dispose())
        loop.close()


def _error_result(e: WardrobeImageryError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": e.message,
        "error_code": e.error_code,
        "stage": e.stage,
    }


@celery_app.task(
    bind=True,
    name="wardrobe_imagery.pipeline.tasks.generate_item_image",
    acks_late=True
)
def generate_item_image(
    self,
    wardrobe_item_id: str,
    user_id: str,
    prompt: str
) -> Dict[str, Any]:
    """
    Flow B in a worker. The caller was authenticated by the API, so the
    task acts as the item owner.

    Returns:
        GenerationResponse as a dict, or the failure envelope
    """
    set_item_context(wardrobe_item_id, "generation")

    try:
        logger.info("task_generate_started", task_id=self.request.id)
        request = GenerateRequest(wardrobe_item_id=wardrobe_item_id, user_id=user_id, prompt=prompt)
        result = _run(lambda pipeline: pipeline.generate_item_image(request, caller_id=user_id))
        logger.info("task_generate_completed", image_url=result.image_url)
        return result.model_dump()

    except WardrobeImageryError as e:
        # Status is already terminal; report instead of retrying
        logger.warning("task_generate_failed", error=e.message, error_code=e.error_code, stage=e.stage)
        return _error_result(e)

    except Exception as e:
        logger.error(
            "task_generate_unexpected_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        raise

    finally:
        clear_item_context()

