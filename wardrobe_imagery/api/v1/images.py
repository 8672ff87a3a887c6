"""
Image Endpoints

POST /api/v1/process-image - Upload an image, optionally removing its background
POST /api/v1/generate-item-image - Generate an item image from a text prompt
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from wardrobe_imagery.api.dependencies import get_current_user, get_pipeline
from wardrobe_imagery.core.auth import CallerIdentity
from wardrobe_imagery.core.exceptions import ValidationError
from wardrobe_imagery.core.logging import get_logger
from wardrobe_imagery.pipeline.orchestrator import ImagePipeline
from wardrobe_imagery.pipeline.schemas import (
    GenerateRequest,
    GenerationResponse,
    ImageProcessingResult,
    TaskAcceptedResponse,
    UploadRequest,
)

logger = get_logger(__name__)
router = APIRouter()


@router.post("/process-image", response_model=ImageProcessingResult)
async def process_image(
    image: Optional[UploadFile] = File(None),
    remove_background: bool = Form(True),
    item_id: Optional[str] = Form(None),
    caller: CallerIdentity = Depends(get_current_user),
    pipeline: ImagePipeline = Depends(get_pipeline)
):
    """
    Store an uploaded image for the caller.

    When background removal fails the original is kept and the response
    still succeeds with `background_removal_status: "failed"`.
    """
    if image is None:
        raise ValidationError("No image file provided", stage="validation")

    data = await image.read()
    logger.info(
        "upload_received",
        owner_id=caller.id,
        item_id=item_id,
        content_type=image.content_type,
        size_bytes=len(data),
        remove_background=remove_background
    )

    request = UploadRequest(
        owner_id=caller.id,
        image_bytes=data,
        declared_mime_type=image.content_type or "",
        remove_background=remove_background,
        item_id=item_id or None,
    )
    return await pipeline.process_upload(request)


@router.post(
    "/generate-item-image",
    response_model=GenerationResponse,
    responses={202: {"model": TaskAcceptedResponse}}
)
async def generate_item_image(
    request: GenerateRequest,
    caller: CallerIdentity = Depends(get_current_user),
    pipeline: ImagePipeline = Depends(get_pipeline)
):
    """
    Generate a product image for one of the caller's wardrobe items.

    With `run_async=true` the request is authorized here and the run is
    handed to a Celery worker; poll /api/v1/status/{item_id} for the outcome.
    """
    if request.run_async:
        await pipeline.authorize_generation(request, caller.id)

        from wardrobe_imagery.pipeline.tasks import generate_item_image as generate_item_image_task
        task = generate_item_image_task.delay(
            wardrobe_item_id=request.wardrobe_item_id,
            user_id=request.user_id,
            prompt=request.prompt
        )

        logger.info("generation_task_dispatched", item_id=request.wardrobe_item_id, task_id=task.id)
        return JSONResponse(
            status_code=202,
            content=TaskAcceptedResponse(task_id=task.id).model_dump()
        )

    return await pipeline.generate_item_image(request, caller.id)
