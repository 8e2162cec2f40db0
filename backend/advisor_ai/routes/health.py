"""
Health check endpoint.
"""
from fastapi import APIRouter, Request

from advisor_ai.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check(request: Request):
    """
    Basic health check endpoint.

    Reports whether the AI service is wired and which store backend it uses.
    """
    service = getattr(request.app.state, "ai_service", None)
    redis_client = getattr(request.app.state, "redis", None)
    return {
        "status": "ok" if service is not None else "starting",
        "message": "API is running",
        "stores": "redis" if redis_client is not None else "memory",
    }
