"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- POST /api/v1/process-image - upload flow
- POST /api/v1/generate-item-image - prompt-to-image flow
- GET /api/v1/status/{item_id} - processing status of an item
- GET /api/v1/metrics - Prometheus exposition
"""

from fastapi import APIRouter

from wardrobe_imagery.api.v1.images import router as images_router
from wardrobe_imagery.api.v1.metrics import router as metrics_router
from wardrobe_imagery.api.v1.status import router as status_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(images_router, tags=["images"])
api_v1_router.include_router(status_router, prefix="/status", tags=["status"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
