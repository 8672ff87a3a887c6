import httpx
import pytest
from PIL import Image
from unittest.mock import AsyncMock

from tests.conftest import OTHER_OWNER_ID, OWNER_ID, PUBLIC_BASE_URL, make_image_bytes, make_png_header
from wardrobe_imagery.core.exceptions import (
    BackgroundRemovalError,
    GenerationError,
    NotFoundError,
    OwnershipError,
    ValidationError,
)
from wardrobe_imagery.engines.replicate import GenerationResult, ReplicateBackgroundRemovalClient
from wardrobe_imagery.pipeline.orchestrator import ImagePipeline
from wardrobe_imagery.pipeline.schemas import GenerateRequest, UploadRequest

REMOVED_URL = "https://replicate.delivery/no-bg.png"
GENERATED_URL = "https://replicate.delivery/generated.png"
BUCKET_URL = f"{PUBLIC_BASE_URL}/wardrobe-images"


def image_server(content: bytes, content_type: str = "image/png"):
    """Serves `content` for any download URL."""
    def handler(request):
        return httpx.Response(200, content=content, headers={"content-type": content_type})
    return httpx.MockTransport(handler)


@pytest.fixture
def generator():
    generator = AsyncMock()
    generator.generate.return_value = GenerationResult(image_url=GENERATED_URL, duration_ms=4200, prediction_id="p1")
    return generator


@pytest.fixture
def remover():
    remover = AsyncMock()
    remover.remove_background.return_value = REMOVED_URL
    return remover


@pytest.fixture
def make_pipeline(pipeline_config, storage, tracker, generator, remover):
    def _make(transport=None, **overrides):
        components = {"generator": generator, "remover": remover, **overrides}
        return ImagePipeline(
            config=pipeline_config,
            storage=storage,
            tracker=tracker,
            http_transport=transport or image_server(make_image_bytes(200, 200, "PNG", "RGBA")),
            **components
        )
    return _make


def stored_files(storage, prefix):
    root = storage.bucket_path / prefix
    return sorted(p.relative_to(storage.bucket_path).as_posix() for p in root.rglob("*") if p.is_file())


# =============================================================================
# Flow A - upload
# =============================================================================

@pytest.mark.asyncio
async def test_alpha_png_skips_removal_and_is_stored_verbatim(
    make_pipeline, storage, tracker, remover, create_item, rgba_png_bytes
):
    # Arrange
    item = await create_item()
    pipeline = make_pipeline()
    request = UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=rgba_png_bytes,
        declared_mime_type="image/png",
        remove_background=True,
        item_id=item.id,
    )

    # Act
    result = await pipeline.process_upload(request)

    # Assert
    remover.remove_background.assert_not_called()
    assert result.background_removal_status == "skipped"
    assert result.storage_path == f"processed/{OWNER_ID}/upload/{item.id}.png"
    assert (storage.bucket_path / result.storage_path).read_bytes() == rgba_png_bytes
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "completed"
    assert stored.image_url == result.image_url


@pytest.mark.asyncio
async def test_opaque_jpeg_with_removal_ends_completed(
    make_pipeline, storage, tracker, remover, create_item, jpeg_bytes
):
    # Arrange
    item = await create_item()
    pipeline = make_pipeline()
    request = UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
        remove_background=True,
        item_id=item.id,
    )

    # Act
    result = await pipeline.process_upload(request)

    # Assert
    source_url = remover.remove_background.await_args.args[0]
    assert source_url.startswith(f"{BUCKET_URL}/original/{OWNER_ID}/")
    assert result.success is True
    assert result.background_removal_status == "completed"
    assert result.image_url == f"{BUCKET_URL}/processed/{OWNER_ID}/upload/{item.id}.png"
    assert stored_files(storage, "original") == []
    assert stored_files(storage, "processed") == [result.storage_path]

    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "completed"
    assert stored.image_url == result.image_url
    assert stored.processing_started_at is not None
    assert stored.processing_completed_at is not None


@pytest.mark.asyncio
async def test_oversized_removal_result_is_downscaled(make_pipeline, storage, create_item, jpeg_bytes):
    item = await create_item()
    pipeline = make_pipeline(transport=image_server(make_image_bytes(2048, 1024, "PNG", "RGBA")))

    result = await pipeline.process_upload(UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
        item_id=item.id,
    ))

    with Image.open(storage.bucket_path / result.storage_path) as image:
        assert image.size == (1024, 512)


@pytest.mark.asyncio
async def test_removal_failure_degrades_to_original(make_pipeline, storage, tracker, create_item, jpeg_bytes):
    # Arrange
    attempts = []

    def failing_replicate(request):
        attempts.append(request)
        return httpx.Response(503, text="model overloaded")

    async def no_sleep(seconds):
        return None

    remover = ReplicateBackgroundRemovalClient(
        api_token="r8_test",
        model="851-labs/background-remover:v1",
        transport=httpx.MockTransport(failing_replicate),
        sleep=no_sleep,
    )
    item = await create_item()
    pipeline = make_pipeline(remover=remover)

    # Act
    result = await pipeline.process_upload(UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
        remove_background=True,
        item_id=item.id,
    ))

    # Assert
    assert len(attempts) == 3
    assert result.success is True
    assert result.background_removal_status == "failed"
    assert result.image_url.startswith(f"{BUCKET_URL}/original/{OWNER_ID}/")
    assert stored_files(storage, "original") == [result.storage_path]

    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "failed"
    assert stored.image_url == result.image_url
    assert stored.processing_completed_at is not None


@pytest.mark.asyncio
async def test_download_failure_also_degrades(make_pipeline, tracker, create_item, jpeg_bytes):
    item = await create_item()
    broken = httpx.MockTransport(lambda request: httpx.Response(404))
    pipeline = make_pipeline(transport=broken)

    result = await pipeline.process_upload(UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
        item_id=item.id,
    ))

    assert result.background_removal_status == "failed"
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "failed"
    assert stored.image_url == result.image_url


@pytest.mark.asyncio
async def test_upload_without_removal_completes_with_original(
    make_pipeline, tracker, remover, create_item, jpeg_bytes
):
    item = await create_item()
    pipeline = make_pipeline()

    result = await pipeline.process_upload(UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
        remove_background=False,
        item_id=item.id,
    ))

    remover.remove_background.assert_not_called()
    assert result.background_removal_status == "not_requested"
    assert result.storage_path.endswith(".jpg")
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "completed"
    assert stored.image_url == result.image_url


@pytest.mark.asyncio
async def test_upload_without_item_skips_status_writes(make_pipeline, storage, jpeg_bytes):
    pipeline = make_pipeline()

    result = await pipeline.process_upload(UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
    ))

    assert result.background_removal_status == "completed"
    assert result.storage_path.startswith(f"processed/{OWNER_ID}/upload/")
    assert stored_files(storage, "original") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("data, declared, message", [
    (b"", "image/jpeg", "No image file provided"),
    (b"\xff\xd8\xff" + b"\x00" * (5 * 1024 * 1024), "image/jpeg", "exceeds maximum allowed size"),
    (b"GIF89a" + b"\x00" * 32, "image/gif", "File type not supported"),
    (b"\x89PNG\r\n\x1a\n" + b"\x00" * 32, "image/jpeg", "does not match declared MIME type"),
])
async def test_invalid_uploads_rejected_before_any_side_effect(
    make_pipeline, storage, remover, data, declared, message
):
    pipeline = make_pipeline()

    with pytest.raises(ValidationError, match=message) as exc_info:
        await pipeline.process_upload(UploadRequest(
            owner_id=OWNER_ID,
            image_bytes=data,
            declared_mime_type=declared,
        ))

    assert exc_info.value.code == 400
    assert not storage.bucket_path.exists()
    remover.remove_background.assert_not_called()


@pytest.mark.asyncio
async def test_upload_for_foreign_item_is_not_found(make_pipeline, storage, create_item, jpeg_bytes):
    item = await create_item(user_id=OTHER_OWNER_ID)
    pipeline = make_pipeline()

    with pytest.raises(NotFoundError):
        await pipeline.process_upload(UploadRequest(
            owner_id=OWNER_ID,
            image_bytes=jpeg_bytes,
            declared_mime_type="image/jpeg",
            item_id=item.id,
        ))

    assert not storage.bucket_path.exists()


@pytest.mark.asyncio
async def test_item_deleted_mid_run_removes_processed_object(
    make_pipeline, storage, remover, create_item, delete_item, jpeg_bytes
):
    # Arrange
    item = await create_item()

    async def delete_then_succeed(url):
        await delete_item(item.id)
        return REMOVED_URL

    remover.remove_background.side_effect = delete_then_succeed
    pipeline = make_pipeline()

    # Act
    with pytest.raises(NotFoundError):
        await pipeline.process_upload(UploadRequest(
            owner_id=OWNER_ID,
            image_bytes=jpeg_bytes,
            declared_mime_type="image/jpeg",
            item_id=item.id,
        ))

    # Assert
    assert stored_files(storage, "processed") == []
    assert stored_files(storage, "original") == []


@pytest.mark.asyncio
async def test_garbled_model_lookup_degrades_to_original(make_pipeline, tracker, create_item, jpeg_bytes):
    # Arrange
    async def no_sleep(seconds):
        return None

    remover = ReplicateBackgroundRemovalClient(
        api_token="r8_test",
        model="851-labs/background-remover",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")),
        sleep=no_sleep,
    )
    item = await create_item()
    pipeline = make_pipeline(remover=remover)

    # Act
    result = await pipeline.process_upload(UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
        item_id=item.id,
    ))

    # Assert
    assert result.background_removal_status == "failed"
    assert result.image_url.startswith(f"{BUCKET_URL}/original/{OWNER_ID}/")
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "failed"


@pytest.mark.asyncio
async def test_undecodable_huge_removal_result_is_stored_unresized(
    make_pipeline, storage, tracker, create_item, jpeg_bytes
):
    item = await create_item()
    bomb = make_png_header(20000, 20000)
    pipeline = make_pipeline(transport=image_server(bomb))

    result = await pipeline.process_upload(UploadRequest(
        owner_id=OWNER_ID,
        image_bytes=jpeg_bytes,
        declared_mime_type="image/jpeg",
        item_id=item.id,
    ))

    assert result.background_removal_status == "completed"
    assert (storage.bucket_path / result.storage_path).read_bytes() == bomb
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "completed"


@pytest.mark.asyncio
async def test_failed_completion_write_keeps_original_fallback(
    make_pipeline, storage, tracker, create_item, jpeg_bytes, monkeypatch
):
    # Arrange
    item = await create_item()
    monkeypatch.setattr(tracker, "finalize_completed", AsyncMock(side_effect=RuntimeError("database unavailable")))
    pipeline = make_pipeline()

    # Act
    with pytest.raises(RuntimeError):
        await pipeline.process_upload(UploadRequest(
            owner_id=OWNER_ID,
            image_bytes=jpeg_bytes,
            declared_mime_type="image/jpeg",
            item_id=item.id,
        ))

    # Assert
    originals = stored_files(storage, "original")
    assert len(originals) == 1
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "failed"
    assert stored.image_url == f"{BUCKET_URL}/{originals[0]}"


# =============================================================================
# Flow B - generate
# =============================================================================

@pytest.mark.asyncio
async def test_generation_success(make_pipeline, storage, tracker, generator, remover, create_item):
    # Arrange
    item = await create_item()
    pipeline = make_pipeline(transport=image_server(b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"))
    request = GenerateRequest(wardrobe_item_id=item.id, user_id=OWNER_ID, prompt="navy blazer, product photo")

    # Act
    result = await pipeline.generate_item_image(request, caller_id=OWNER_ID)

    # Assert
    generator.generate.assert_awaited_once_with("navy blazer, product photo")
    remover.remove_background.assert_awaited_once_with(GENERATED_URL)
    assert result.storage_path == f"processed/{OWNER_ID}/generated/{item.id}.webp"
    assert result.image_url == f"{BUCKET_URL}/{result.storage_path}"
    assert result.generation_duration_ms == 4200
    assert result.cost_units == 5

    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "completed"
    assert stored.image_url == result.image_url


@pytest.mark.asyncio
async def test_regeneration_overwrites_in_place(make_pipeline, storage, create_item):
    item = await create_item()
    pipeline = make_pipeline()
    request = GenerateRequest(wardrobe_item_id=item.id, user_id=OWNER_ID, prompt="white sneakers")

    first = await pipeline.generate_item_image(request, caller_id=OWNER_ID)
    second = await pipeline.generate_item_image(request, caller_id=OWNER_ID)

    assert first.storage_path == second.storage_path
    assert stored_files(storage, "processed") == [second.storage_path]


@pytest.mark.asyncio
async def test_generation_removal_failure_is_hard_failure(make_pipeline, tracker, remover, create_item):
    # Arrange
    item = await create_item()
    remover.remove_background.side_effect = BackgroundRemovalError("Background removal failed: model overloaded")
    pipeline = make_pipeline()
    request = GenerateRequest(wardrobe_item_id=item.id, user_id=OWNER_ID, prompt="navy blazer, product photo")

    # Act
    with pytest.raises(BackgroundRemovalError) as exc_info:
        await pipeline.generate_item_image(request, caller_id=OWNER_ID)

    # Assert
    assert exc_info.value.code == 502
    assert exc_info.value.error_code == "BACKGROUND_REMOVAL_FAILED"
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "failed"
    assert stored.image_url is None
    assert stored.processing_completed_at is not None


@pytest.mark.asyncio
async def test_generation_failure_marks_failed(make_pipeline, tracker, generator, remover, create_item):
    item = await create_item()
    generator.generate.side_effect = GenerationError("Replicate API error (500): boom", http_status=500)
    pipeline = make_pipeline()

    with pytest.raises(GenerationError) as exc_info:
        await pipeline.generate_item_image(
            GenerateRequest(wardrobe_item_id=item.id, user_id=OWNER_ID, prompt="wool coat"),
            caller_id=OWNER_ID
        )

    assert exc_info.value.error_code == "REPLICATE_ERROR"
    remover.remove_background.assert_not_called()
    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "failed"


@pytest.mark.asyncio
async def test_unexpected_error_still_ends_terminal(make_pipeline, tracker, generator, create_item):
    item = await create_item()
    generator.generate.side_effect = RuntimeError("unexpected")
    pipeline = make_pipeline()

    with pytest.raises(RuntimeError):
        await pipeline.generate_item_image(
            GenerateRequest(wardrobe_item_id=item.id, user_id=OWNER_ID, prompt="wool coat"),
            caller_id=OWNER_ID
        )

    stored = await tracker.get_owned_item(item.id, OWNER_ID)
    assert stored.processing_status == "failed"


@pytest.mark.asyncio
async def test_generation_for_another_user_is_forbidden(make_pipeline, generator, create_item):
    item = await create_item()
    pipeline = make_pipeline()

    with pytest.raises(OwnershipError) as exc_info:
        await pipeline.generate_item_image(
            GenerateRequest(wardrobe_item_id=item.id, user_id=OWNER_ID, prompt="wool coat"),
            caller_id=OTHER_OWNER_ID
        )

    assert exc_info.value.code == 403
    generator.generate.assert_not_called()


@pytest.mark.asyncio
async def test_generation_for_missing_item_is_not_found(make_pipeline, generator):
    pipeline = make_pipeline()

    with pytest.raises(NotFoundError):
        await pipeline.generate_item_image(
            GenerateRequest(wardrobe_item_id="missing", user_id=OWNER_ID, prompt="wool coat"),
            caller_id=OWNER_ID
        )

    generator.generate.assert_not_called()
