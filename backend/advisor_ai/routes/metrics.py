"""
GET /metrics: Prometheus text exposition for scraping (no authentication).
"""
from fastapi import APIRouter, Response

from advisor_ai.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/")
async def metrics() -> Response:
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
