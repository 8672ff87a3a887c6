"""
GET /api/v1/metrics - Prometheus scrape target
"""

from fastapi import APIRouter, Response

from wardrobe_imagery.core.metrics import render_metrics

router = APIRouter()


@router.get("/metrics", include_in_schema=False)
async def metrics():
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
