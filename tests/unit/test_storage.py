import json

import httpx
import pytest

from wardrobe_imagery.core.exceptions import StorageError
from wardrobe_imagery.core.storage import (
    BucketPolicy,
    LocalStorage,
    SupabaseStorage,
    original_path,
    processed_path,
)

SUPABASE_URL = "https://project.supabase.co"


# =============================================================================
# Paths
# =============================================================================

def test_original_path_is_timestamped():
    assert original_path("user-1", "jpg", timestamp_ms=1700000000000) == "original/user-1/1700000000000.jpg"


def test_processed_path_is_keyed_by_asset():
    assert processed_path("user-1", "generated", asset_id="item-9", extension="webp") == (
        "processed/user-1/generated/item-9.webp"
    )
    assert processed_path("user-1", "upload", timestamp_ms=42) == "processed/user-1/upload/42.png"


# =============================================================================
# LocalStorage
# =============================================================================

@pytest.mark.asyncio
async def test_local_upload_requires_bucket(storage):
    with pytest.raises(StorageError, match="Bucket not found"):
        await storage.upload("original/u/1.jpg", b"data", "image/jpeg")


@pytest.mark.asyncio
async def test_local_upload_and_public_url(storage):
    await storage.ensure_bucket()

    path = await storage.upload("original/u/1.jpg", b"data", "image/jpeg")

    assert path == "original/u/1.jpg"
    assert await storage.exists(path)
    assert storage.get_public_url(path) == "http://test/static/storage/wardrobe-images/original/u/1.jpg"


@pytest.mark.asyncio
async def test_local_upload_without_upsert_refuses_overwrite(storage):
    await storage.ensure_bucket()
    await storage.upload("original/u/1.jpg", b"first", "image/jpeg")

    with pytest.raises(StorageError, match="already exists"):
        await storage.upload("original/u/1.jpg", b"second", "image/jpeg")

    await storage.upload("original/u/1.jpg", b"second", "image/jpeg", upsert=True)
    assert (storage.bucket_path / "original/u/1.jpg").read_bytes() == b"second"


@pytest.mark.asyncio
async def test_local_bucket_policy_is_enforced(tmp_path):
    storage = LocalStorage(base_path=str(tmp_path), policy=BucketPolicy(file_size_limit=4))
    await storage.ensure_bucket()

    with pytest.raises(StorageError, match="size limit"):
        await storage.upload("processed/u/upload/1.png", b"12345", "image/png")
    with pytest.raises(StorageError, match="not allowed"):
        await storage.upload("processed/u/upload/1.gif", b"1", "image/gif")


@pytest.mark.asyncio
async def test_local_ensure_bucket_updates_mismatched_limit(tmp_path):
    await LocalStorage(base_path=str(tmp_path), policy=BucketPolicy(file_size_limit=1)).ensure_bucket()

    storage = LocalStorage(base_path=str(tmp_path), policy=BucketPolicy(file_size_limit=1024))
    await storage.ensure_bucket()
    await storage.ensure_bucket()

    policy = json.loads((storage.bucket_path / ".bucket.json").read_text())
    assert policy["file_size_limit"] == 1024


@pytest.mark.asyncio
async def test_local_rejects_path_traversal(storage):
    await storage.ensure_bucket()

    with pytest.raises(StorageError, match="Invalid storage path"):
        await storage.upload("../escape.png", b"x", "image/png")


@pytest.mark.asyncio
async def test_local_remove_is_best_effort(storage):
    await storage.ensure_bucket()
    await storage.upload("original/u/1.jpg", b"data", "image/jpeg")

    removed = await storage.remove(["original/u/1.jpg", "original/u/missing.jpg", "../bad"])

    assert removed == 1
    assert not await storage.exists("original/u/1.jpg")


# =============================================================================
# SupabaseStorage
# =============================================================================

def make_supabase(handler) -> SupabaseStorage:
    return SupabaseStorage(
        url=SUPABASE_URL,
        service_key="service-key",
        policy=BucketPolicy(),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_supabase_creates_missing_bucket():
    # Arrange
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "GET":
            return httpx.Response(400, json={"statusCode": "404", "error": "Bucket not found", "message": "Bucket not found"})
        body = json.loads(request.content)
        assert body["id"] == "wardrobe-images"
        assert body["public"] is True
        assert body["file_size_limit"] == 10 * 1024 * 1024
        assert body["allowed_mime_types"] == ["image/webp", "image/png", "image/jpeg"]
        return httpx.Response(200, json={"name": "wardrobe-images"})

    # Act
    await make_supabase(handler).ensure_bucket()

    # Assert
    assert calls == [
        ("GET", "/storage/v1/bucket/wardrobe-images"),
        ("POST", "/storage/v1/bucket"),
    ]


@pytest.mark.asyncio
async def test_supabase_racing_create_is_success():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(404, json={"message": "Bucket not found"})
        return httpx.Response(409, json={"message": "The resource already exists"})

    await make_supabase(handler).ensure_bucket()


@pytest.mark.asyncio
async def test_supabase_updates_mismatched_size_limit():
    calls = []

    def handler(request):
        calls.append(request.method)
        if request.method == "GET":
            return httpx.Response(200, json={"id": "wardrobe-images", "file_size_limit": 1024})
        return httpx.Response(200, json={"message": "Successfully updated"})

    await make_supabase(handler).ensure_bucket()

    assert calls == ["GET", "PUT"]


@pytest.mark.asyncio
async def test_supabase_upload_sends_upsert_flag():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"Key": "wardrobe-images/processed/u/generated/i.png"})

    storage = make_supabase(handler)

    path = await storage.upload("processed/u/generated/i.png", b"png", "image/png", upsert=True)

    assert path == "processed/u/generated/i.png"
    assert seen[0].url.path == "/storage/v1/object/wardrobe-images/processed/u/generated/i.png"
    assert seen[0].headers["x-upsert"] == "true"
    assert seen[0].headers["content-type"] == "image/png"
    assert storage.get_public_url(path) == (
        f"{SUPABASE_URL}/storage/v1/object/public/wardrobe-images/processed/u/generated/i.png"
    )


@pytest.mark.asyncio
async def test_supabase_upload_failure_raises():
    storage = make_supabase(lambda request: httpx.Response(400, json={"message": "The resource already exists"}))

    with pytest.raises(StorageError, match="already exists"):
        await storage.upload("original/u/1.jpg", b"x", "image/jpeg")


@pytest.mark.asyncio
async def test_supabase_remove_failure_is_logged_not_raised():
    storage = make_supabase(lambda request: httpx.Response(500, json={"message": "boom"}))

    assert await storage.remove(["original/u/1.jpg"]) == 0


@pytest.mark.asyncio
async def test_supabase_remove_tolerates_non_json_reply():
    storage = make_supabase(lambda request: httpx.Response(200, text="OK"))

    assert await storage.remove(["original/u/1.jpg", "original/u/2.jpg"]) == 2
