"""
Imagery Pipeline Orchestrator

Drives the two flows that produce a wardrobe item's image:

- Flow A (upload): validate -> [alpha skip] -> original upload ->
  background removal -> resize -> processed upload -> completed.
  A removal failure degrades to the original image.
- Flow B (generate): ownership -> generation -> background removal ->
  processed upload -> completed. Every failure is terminal.

The pipeline holds no state between runs; storage, tracker and the two
external-service ports are injected at construction.
"""

from typing import Any, Callable, Iterable, Optional, Tuple

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from wardrobe_imagery.core.config import PipelineConfig, Settings, settings
from wardrobe_imagery.core.exceptions import (
    NotFoundError,
    OwnershipError,
    StorageError,
    ValidationError,
    WardrobeImageryError,
)
from wardrobe_imagery.core.logging import LogContext, get_logger
from wardrobe_imagery.core.metrics import (
    record_pipeline_run,
    record_rejected_upload,
    track_stage_latency,
)
from wardrobe_imagery.core.storage import (
    PURPOSE_GENERATED,
    PURPOSE_UPLOAD,
    IStorage,
    StorageFactory,
    original_path,
    processed_path,
)
from wardrobe_imagery.engines.replicate import (
    IBackgroundRemover,
    IImageGenerator,
    ReplicateBackgroundRemovalClient,
    ReplicateGenerationClient,
)
from wardrobe_imagery.modules.items.models import utcnow
from wardrobe_imagery.pipeline.resize import resize_best_effort
from wardrobe_imagery.pipeline.schemas import (
    GenerateRequest,
    GenerationResponse,
    ImageProcessingResult,
    UploadRequest,
)
from wardrobe_imagery.pipeline.status import UNSET, StatusTracker
from wardrobe_imagery.pipeline.validation import (
    detect_content_type,
    extension_for_mime,
    has_alpha_channel,
    matches_declared_type,
)

logger = get_logger(__name__)

FLOW_UPLOAD = "upload"
FLOW_GENERATE = "generate"

# Background removal outcomes reported by Flow A
REMOVAL_SKIPPED = "skipped"
REMOVAL_COMPLETED = "completed"
REMOVAL_FAILED = "failed"
REMOVAL_NOT_REQUESTED = "not_requested"


class ImagePipeline:
    """Orchestrates validation, external services, storage and status writes."""

    def __init__(
        self,
        config: PipelineConfig,
        storage: IStorage,
        tracker: StatusTracker,
        generator: IImageGenerator,
        remover: IBackgroundRemover,
        http_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config
        self.storage = storage
        self.tracker = tracker
        self.generator = generator
        self.remover = remover
        self._http_transport = http_transport

    @classmethod
    def from_settings(
        cls,
        s: Optional[Settings] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None
    ) -> "ImagePipeline":
        """Wire the production implementations from application settings."""
        s = s or settings
        if session_factory is None:
            from wardrobe_imagery.core.database import async_session_maker
            session_factory = async_session_maker

        return cls(
            config=PipelineConfig.from_settings(s),
            storage=StorageFactory.create(s),
            tracker=StatusTracker(session_factory),
            generator=ReplicateGenerationClient.from_settings(s),
            remover=ReplicateBackgroundRemovalClient.from_settings(s),
        )

    # =========================================================================
    # Shared helpers
    # =========================================================================

    def validate_upload(self, request: UploadRequest):
        """
        Reject bad input before any external call.

        Raises:
            ValidationError: empty, oversized, disallowed or mislabelled files
        """
        data = request.image_bytes
        declared = (request.declared_mime_type or "").lower()

        if not data:
            record_rejected_upload("empty")
            raise ValidationError("No image file provided", stage="validation")

        if len(data) > self.config.max_source_bytes:
            record_rejected_upload("too_large")
            limit_mb = self.config.max_source_bytes // (1024 * 1024)
            raise ValidationError(
                f"File size exceeds maximum allowed size ({limit_mb}MB)",
                stage="validation",
                details={"size_bytes": len(data)}
            )

        if declared not in self.config.allowed_mime_types:
            record_rejected_upload("mime_not_allowed")
            allowed = ", ".join(self.config.allowed_mime_types)
            raise ValidationError(
                f"File type not supported. Allowed types: {allowed}",
                stage="validation"
            )

        if not matches_declared_type(data, declared):
            record_rejected_upload("type_mismatch")
            logger.warning(
                "upload_type_mismatch",
                owner_id=request.owner_id,
                declared_type=declared,
                leading_bytes=data[:12].hex()
            )
            raise ValidationError(
                "File content does not match declared MIME type",
                stage="validation"
            )

    async def _download(self, url: str, label: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self.config.download_timeout,
                transport=self._http_transport,
                follow_redirects=True
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to download {label}: {e}", stage="download")

        if not response.is_success:
            raise StorageError(
                f"Failed to download {label}: HTTP {response.status_code}",
                stage="download"
            )
        return response

    async def _require_owned_item(self, item_id: str, owner_id: str):
        item = await self.tracker.get_owned_item(item_id, owner_id)
        if item is None:
            raise NotFoundError(item_id=item_id)
        return item

    async def _complete(
        self,
        item_id: Optional[str],
        owner_id: str,
        image_url: str,
        orphan_paths: Iterable[str],
        started_at: Any = UNSET
    ):
        """Final write; a vanished item turns the run into a 404."""
        if item_id is None:
            return
        completed = await self.tracker.finalize_completed(
            item_id, owner_id, image_url, self.storage, orphan_paths, started_at=started_at
        )
        if not completed:
            raise NotFoundError("Wardrobe item was deleted during processing", item_id=item_id)

    async def _fail_quietly(self, item_id: Optional[str], owner_id: str, image_url: Any = UNSET):
        """Move the record to failed without masking the error being handled."""
        if item_id is None:
            return
        try:
            await self.tracker.mark_failed(item_id, owner_id, image_url=image_url)
        except Exception as e:
            logger.error("status_failure_write_failed", item_id=item_id, error=str(e))

    # =========================================================================
    # Flow A - direct upload
    # =========================================================================

    async def process_upload(self, request: UploadRequest) -> ImageProcessingResult:
        """
        Store a user-supplied image, removing its background when asked.

        Returns:
            ImageProcessingResult; background_removal_status "failed" means
            the original image was kept as a usable fallback.

        Raises:
            ValidationError: input rejected before any external call
            NotFoundError: item_id given but not owned by the caller
            StorageError: bucket or object writes failed
        """
        self.validate_upload(request)

        owner_id = request.owner_id
        item_id = request.item_id
        data = request.image_bytes
        declared = request.declared_mime_type.lower()

        with LogContext(item_id=item_id, stage="validation") as ctx:
            if item_id is not None:
                await self._require_owned_item(item_id, owner_id)

            await self.storage.ensure_bucket()
            started_at = utcnow()

            if request.remove_background and has_alpha_channel(data):
                ctx.set_stage("upload")
                logger.info("background_removal_skipped", reason="png_has_alpha")
                path = processed_path(owner_id, PURPOSE_UPLOAD, asset_id=item_id)
                await self.storage.upload(path, data, "image/png", upsert=item_id is not None)
                url = self.storage.get_public_url(path)
                await self._complete(item_id, owner_id, url, [path], started_at=started_at)
                record_pipeline_run(FLOW_UPLOAD, "completed")
                return ImageProcessingResult(
                    image_url=url,
                    storage_path=path,
                    background_removal_status=REMOVAL_SKIPPED,
                    message="Image already has transparent background",
                )

            ctx.set_stage("upload")
            source_path = original_path(owner_id, extension_for_mime(declared))
            await self.storage.upload(source_path, data, declared, upsert=False)
            source_url = self.storage.get_public_url(source_path)
            logger.info("original_uploaded", path=source_path, size_bytes=len(data))

            if not request.remove_background:
                await self._complete(item_id, owner_id, source_url, [source_path], started_at=started_at)
                record_pipeline_run(FLOW_UPLOAD, "completed")
                return ImageProcessingResult(
                    image_url=source_url,
                    storage_path=source_path,
                    background_removal_status=REMOVAL_NOT_REQUESTED,
                    message="Image uploaded successfully",
                )

            if item_id is not None:
                await self.tracker.mark_processing(item_id, owner_id)

            try:
                ctx.set_stage("background_removal")
                try:
                    path, url = await self._remove_and_store(owner_id, item_id, source_url)
                except (WardrobeImageryError, httpx.HTTPError) as e:
                    logger.warning(
                        "background_removal_degraded",
                        error=str(e),
                        fallback_url=source_url
                    )
                    await self._fail_quietly(item_id, owner_id, image_url=source_url)
                    record_pipeline_run(FLOW_UPLOAD, "degraded", "background_removal")
                    return ImageProcessingResult(
                        image_url=source_url,
                        storage_path=source_path,
                        background_removal_status=REMOVAL_FAILED,
                        message="Image uploaded, background removal failed (original retained)",
                    )

                ctx.set_stage("finalize")
                await self._complete(item_id, owner_id, url, [path, source_path])
                await self.storage.remove([source_path])
            except NotFoundError:
                record_pipeline_run(FLOW_UPLOAD, "failed", "finalize")
                raise
            except Exception:
                await self._fail_quietly(item_id, owner_id, image_url=source_url)
                record_pipeline_run(FLOW_UPLOAD, "failed", "unexpected")
                raise

            record_pipeline_run(FLOW_UPLOAD, "completed")
            logger.info("upload_pipeline_completed", path=path)
            return ImageProcessingResult(
                image_url=url,
                storage_path=path,
                background_removal_status=REMOVAL_COMPLETED,
                message="Background removed successfully",
            )

    async def _remove_and_store(
        self,
        owner_id: str,
        item_id: Optional[str],
        source_url: str
    ) -> Tuple[str, str]:
        result_url = await self.remover.remove_background(source_url)
        response = await self._download(result_url, "background-removed image")

        with track_stage_latency("resize"):
            downloaded = response.content
            data = resize_best_effort(downloaded, self.config.resize_max_dimension)

        if data is downloaded:
            content_type, extension = detect_content_type(response.headers.get("content-type"))
        else:
            content_type, extension = "image/png", "png"

        path = processed_path(owner_id, PURPOSE_UPLOAD, asset_id=item_id, extension=extension)
        with track_stage_latency("upload"):
            await self.storage.upload(path, data, content_type, upsert=item_id is not None)
        return path, self.storage.get_public_url(path)

    # =========================================================================
    # Flow B - generate from prompt
    # =========================================================================

    async def authorize_generation(self, request: GenerateRequest, caller_id: str):
        """Owner match and item existence, checked before any external call."""
        if request.user_id != caller_id:
            logger.warning("generation_owner_mismatch", caller_id=caller_id)
            raise OwnershipError(item_id=request.wardrobe_item_id)
        await self._require_owned_item(request.wardrobe_item_id, request.user_id)

    async def generate_item_image(self, request: GenerateRequest, caller_id: str) -> GenerationResponse:
        """
        Generate a product image for an existing wardrobe item.

        Raises:
            OwnershipError: request.user_id is not the caller
            NotFoundError: item missing, foreign, or deleted mid-run
            GenerationError: text-to-image failed (502)
            BackgroundRemovalError: removal of the generated image failed (502)
            StorageError: download or upload of the result failed
        """
        item_id = request.wardrobe_item_id
        owner_id = request.user_id

        with LogContext(item_id=item_id, stage="authorization") as ctx:
            await self.authorize_generation(request, caller_id)
            await self.storage.ensure_bucket()
            await self.tracker.mark_processing(item_id, owner_id)

            try:
                ctx.set_stage("generation")
                generation = await self.generator.generate(request.prompt)
                logger.info("image_generated", duration_ms=generation.duration_ms)

                ctx.set_stage("background_removal")
                result_url = await self.remover.remove_background(generation.image_url)

                ctx.set_stage("upload")
                response = await self._download(result_url, "processed image")
                content_type, extension = detect_content_type(response.headers.get("content-type"))
                path = processed_path(owner_id, PURPOSE_GENERATED, asset_id=item_id, extension=extension)
                with track_stage_latency("upload"):
                    await self.storage.upload(path, response.content, content_type, upsert=True)
                url = self.storage.get_public_url(path)
            except WardrobeImageryError as e:
                await self._fail_quietly(item_id, owner_id)
                record_pipeline_run(FLOW_GENERATE, "failed", e.stage or "unknown")
                raise
            except Exception:
                await self._fail_quietly(item_id, owner_id)
                record_pipeline_run(FLOW_GENERATE, "failed", "unexpected")
                raise

            ctx.set_stage("finalize")
            try:
                await self._complete(item_id, owner_id, url, [path])
            except NotFoundError:
                record_pipeline_run(FLOW_GENERATE, "failed", "finalize")
                raise

            record_pipeline_run(FLOW_GENERATE, "completed")
            logger.info("generation_pipeline_completed", path=path)
            return GenerationResponse(
                image_url=url,
                storage_path=path,
                generation_duration_ms=generation.duration_ms,
                cost_units=self.config.generation_cost_cents,
            )
