"""
Status Endpoint - Item Processing Status

GET /api/v1/status/{item_id} - Processing status of one of the caller's items
"""

from fastapi import APIRouter, Depends

from wardrobe_imagery.api.dependencies import get_current_user, get_status_tracker
from wardrobe_imagery.core.auth import CallerIdentity
from wardrobe_imagery.core.exceptions import NotFoundError
from wardrobe_imagery.pipeline.schemas import ItemStatusResponse
from wardrobe_imagery.pipeline.status import StatusTracker

router = APIRouter()


@router.get("/{item_id}", response_model=ItemStatusResponse)
async def get_item_status(
    item_id: str,
    caller: CallerIdentity = Depends(get_current_user),
    tracker: StatusTracker = Depends(get_status_tracker)
):
    """
    Get the processing status of a wardrobe item.

    Items belonging to other users are reported as not found.
    """
    item = await tracker.get_owned_item(item_id, caller.id)
    if item is None:
        raise NotFoundError(item_id=item_id)

    return ItemStatusResponse(**item.to_status_dict(), is_terminal=item.is_terminal)
