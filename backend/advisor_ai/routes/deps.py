"""
Shared route dependencies.

Authentication is external: the caller identity arrives in the X-User-ID
header, set by the upstream gateway.
"""
from typing import Optional

from fastapi import Header, HTTPException, Request

from advisor_ai.core.logging import set_user_id
from advisor_ai.services.ai.orchestration import AIOrchestrationService


def get_ai_service(request: Request) -> AIOrchestrationService:
    service = getattr(request.app.state, "ai_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="AI service not initialized")
    return service


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    user_id = x_user_id.strip()
    set_user_id(user_id)
    return user_id
