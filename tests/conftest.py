import io
import struct
import zlib
from typing import AsyncGenerator

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from wardrobe_imagery.core.config import PipelineConfig
from wardrobe_imagery.core.storage import BucketPolicy, LocalStorage
from wardrobe_imagery.modules.items.models import WardrobeItem
from wardrobe_imagery.pipeline.status import StatusTracker

OWNER_ID = "user-1"
OTHER_OWNER_ID = "user-2"
PUBLIC_BASE_URL = "http://test/static/storage"


def make_image_bytes(width: int = 200, height: int = 200, fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    colors = {"RGB": (30, 60, 120), "RGBA": (30, 60, 120, 255), "L": 128, "LA": (128, 255)}
    image = Image.new(mode, (width, height), colors[mode])
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_png_header(width: int, height: int) -> bytes:
    """A PNG that declares its size but carries no pixel data."""
    def chunk(kind: bytes, payload: bytes) -> bytes:
        body = kind + payload
        return struct.pack(">I", len(payload)) + body + struct.pack(">I", zlib.crc32(body))

    header = struct.pack(">IIBBBBB", width, height, 8, 6, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IEND", b"")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes(200, 200, "JPEG", "RGB")


@pytest.fixture
def rgba_png_bytes() -> bytes:
    return make_image_bytes(64, 64, "PNG", "RGBA")


@pytest.fixture
def rgb_png_bytes() -> bytes:
    return make_image_bytes(64, 64, "PNG", "RGB")


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[sessionmaker, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def tracker(session_factory) -> StatusTracker:
    return StatusTracker(session_factory)


@pytest.fixture
def create_item(session_factory):
    async def _create(user_id: str = OWNER_ID, **fields) -> WardrobeItem:
        item = WardrobeItem(user_id=user_id, name="Navy blazer", **fields)
        async with session_factory() as session:
            session.add(item)
            await session.commit()
        return item
    return _create


@pytest.fixture
def delete_item(session_factory):
    async def _delete(item_id: str):
        async with session_factory() as session:
            item = await session.get(WardrobeItem, item_id)
            await session.delete(item)
            await session.commit()
    return _delete


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(
        base_path=str(tmp_path / "storage"),
        bucket_name="wardrobe-images",
        policy=BucketPolicy(),
        public_base_url=PUBLIC_BASE_URL,
    )


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig()
