"""
Suitability flag endpoints.

GET  /suitability/flag-sets/{flag_set_id}
POST /suitability/flag-sets/{flag_set_id}/items/{item_id}/acknowledge
GET  /suitability/flag-sets/{flag_set_id}/status
GET  /suitability/applications/{application_id}/flag-sets

The status endpoint is the submission gate consumed by the application
workflow: ``all_acknowledged`` must be true before submission.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field

from advisor_ai.core.logging import get_logger
from advisor_ai.routes.deps import get_ai_service, get_current_user_id
from advisor_ai.services.ai.orchestration import AIOrchestrationService
from advisor_ai.services.suitability.flags import FlagItem, SuitabilityFlagSet

logger = get_logger(__name__)

router = APIRouter()


class AcknowledgeRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class AcknowledgeResponse(BaseModel):
    flag: FlagItem
    already_acknowledged: bool
    all_acknowledged: bool


class FlagSetStatus(BaseModel):
    flag_set_id: str
    application_id: str
    superseded: bool
    all_acknowledged: bool
    pending_blocking_items: List[str]


@router.get("/flag-sets/{flag_set_id}", response_model=SuitabilityFlagSet)
async def get_flag_set(
    flag_set_id: str = Path(..., description="Flag set ID"),
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    return await service.get_flag_set(flag_set_id)


@router.post(
    "/flag-sets/{flag_set_id}/items/{item_id}/acknowledge",
    response_model=AcknowledgeResponse,
)
async def acknowledge_flag(
    body: AcknowledgeRequest,
    flag_set_id: str = Path(..., description="Flag set ID"),
    item_id: str = Path(..., description="Flag item ID"),
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    """
    Acknowledge (override) one flag item.

    Idempotent: acknowledging an acknowledged item returns the existing
    acknowledgment with ``already_acknowledged`` set.
    """
    try:
        result = await service.acknowledge_flag(flag_set_id, item_id, body.reason, user_id=user_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return AcknowledgeResponse(
        flag=result.flag,
        already_acknowledged=result.already_acknowledged,
        all_acknowledged=await service.flags_all_acknowledged(flag_set_id),
    )


@router.get("/flag-sets/{flag_set_id}/status", response_model=FlagSetStatus)
async def flag_set_status(
    flag_set_id: str = Path(..., description="Flag set ID"),
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    flag_set = await service.get_flag_set(flag_set_id)
    return FlagSetStatus(
        flag_set_id=flag_set.id,
        application_id=flag_set.application_id,
        superseded=flag_set.superseded,
        all_acknowledged=flag_set.all_acknowledged(),
        pending_blocking_items=flag_set.pending_blocking_items(),
    )


@router.get("/applications/{application_id}/flag-sets", response_model=List[SuitabilityFlagSet])
async def list_flag_sets(
    application_id: str = Path(..., description="Application ID"),
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    """All flag sets for an application, newest first (audit history)."""
    return await service.list_flag_sets(application_id)
