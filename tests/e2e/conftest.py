from typing import AsyncGenerator
from unittest.mock import AsyncMock

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

from tests.conftest import OTHER_OWNER_ID, OWNER_ID, make_image_bytes
from wardrobe_imagery.api.dependencies import get_auth_provider, get_pipeline, get_status_tracker
from wardrobe_imagery.core.auth import AuthProvider
from wardrobe_imagery.engines.replicate import GenerationResult
from wardrobe_imagery.main import app
from wardrobe_imagery.pipeline.orchestrator import ImagePipeline

TOKENS = {"owner-token": OWNER_ID, "other-token": OTHER_OWNER_ID}


def supabase_auth(request: httpx.Request) -> httpx.Response:
    token = request.headers.get("authorization", "").replace("Bearer ", "")
    if token not in TOKENS:
        return httpx.Response(401, json={"msg": "invalid JWT"})
    return httpx.Response(200, json={"id": TOKENS[token], "email": f"{TOKENS[token]}@example.com"})


@pytest.fixture
def generator():
    generator = AsyncMock()
    generator.generate.return_value = GenerationResult(
        image_url="https://replicate.delivery/generated.png", duration_ms=3100
    )
    return generator


@pytest.fixture
def remover():
    remover = AsyncMock()
    remover.remove_background.return_value = "https://replicate.delivery/no-bg.png"
    return remover


@pytest.fixture
async def client(pipeline_config, storage, tracker, generator, remover) -> AsyncGenerator[AsyncClient, None]:
    downloads = httpx.MockTransport(
        lambda request: httpx.Response(
            200,
            content=make_image_bytes(200, 200, "PNG", "RGBA"),
            headers={"content-type": "image/png"}
        )
    )

    app.dependency_overrides[get_auth_provider] = lambda: AuthProvider(
        url="https://project.supabase.co",
        api_key="service-key",
        transport=httpx.MockTransport(supabase_auth),
    )
    app.dependency_overrides[get_status_tracker] = lambda: tracker
    app.dependency_overrides[get_pipeline] = lambda: ImagePipeline(
        config=pipeline_config,
        storage=storage,
        tracker=tracker,
        generator=generator,
        remover=remover,
        http_transport=downloads,
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers():
    return {"Authorization": "Bearer owner-token"}
