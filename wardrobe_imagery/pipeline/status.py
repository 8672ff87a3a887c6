"""
Status Tracker

Reads and writes the processing-status slice of a wardrobe item. Every
query is scoped by (item_id, owner_id) so a caller can never touch another
user's record.
"""

from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from wardrobe_imagery.core.logging import get_logger
from wardrobe_imagery.core.storage import IStorage
from wardrobe_imagery.modules.items.models import ProcessingStatus, WardrobeItem, utcnow

logger = get_logger(__name__)


class _Unset:
    def __repr__(self):
        return "UNSET"


# Marks a field that should be left untouched (None means "write NULL")
UNSET: Any = _Unset()


class StatusTracker:
    """Per-item processing status persisted in the wardrobe item store."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def get_owned_item(self, item_id: str, owner_id: str) -> Optional[WardrobeItem]:
        """Fetch the item only if it exists and belongs to owner_id."""
        async with self.session_factory() as session:
            statement = select(WardrobeItem).where(
                WardrobeItem.id == item_id,
                WardrobeItem.user_id == owner_id
            )
            result = await session.execute(statement)
            return result.scalar_one_or_none()

    async def set_status(
        self,
        item_id: str,
        owner_id: str,
        status: Optional[str] = None,
        started_at: Any = UNSET,
        completed_at: Any = UNSET,
        image_url: Any = UNSET
    ) -> bool:
        """
        Update only the provided fields.

        Returns:
            True if a row owned by owner_id was updated
        """
        values: Dict[str, Any] = {"updated_at": utcnow()}
        if status is not None:
            values["processing_status"] = status
        if started_at is not UNSET:
            values["processing_started_at"] = started_at
        if completed_at is not UNSET:
            values["processing_completed_at"] = completed_at
        if image_url is not UNSET:
            values["image_url"] = image_url

        async with self.session_factory() as session:
            statement = (
                update(WardrobeItem)
                .where(WardrobeItem.id == item_id, WardrobeItem.user_id == owner_id)
                .values(**values)
            )
            result = await session.execute(statement)
            await session.commit()

        updated = result.rowcount > 0
        if not updated:
            logger.warning(
                "status_update_skipped",
                item_id=item_id,
                attempted_status=status,
                reason="item not found for owner"
            )
        else:
            logger.info("status_updated", item_id=item_id, status=status)
        return updated

    async def mark_processing(self, item_id: str, owner_id: str) -> bool:
        return await self.set_status(
            item_id,
            owner_id,
            status=ProcessingStatus.PROCESSING.value,
            started_at=utcnow(),
            completed_at=None,
        )

    async def mark_failed(self, item_id: str, owner_id: str, image_url: Any = UNSET) -> bool:
        """Terminal failure. A fallback image_url is written only when given."""
        return await self.set_status(
            item_id,
            owner_id,
            status=ProcessingStatus.FAILED.value,
            completed_at=utcnow(),
            image_url=image_url,
        )

    async def finalize_completed(
        self,
        item_id: str,
        owner_id: str,
        image_url: str,
        storage: IStorage,
        orphan_paths: Iterable[str],
        started_at: Any = UNSET
    ) -> bool:
        """
        Final "completed" write with a re-check of the owning record.

        If the item was deleted while the pipeline ran, nothing is written
        and the just-uploaded objects are removed instead.

        Returns:
            True if the record was marked completed
        """
        item = await self.get_owned_item(item_id, owner_id)
        if item is None:
            paths = list(orphan_paths)
            logger.warning("item_deleted_during_processing", item_id=item_id, orphan_paths=paths)
            await storage.remove(paths)
            return False

        return await self.set_status(
            item_id,
            owner_id,
            status=ProcessingStatus.COMPLETED.value,
            started_at=started_at,
            completed_at=utcnow(),
            image_url=image_url,
        )
