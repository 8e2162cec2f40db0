"""
Feature endpoints backed by the AI orchestration layer.

POST /ai/recommendations
POST /ai/suitability
POST /ai/extractions
POST /ai/explanations
GET  /ai/budget

Typed AI errors (budget, upstream, invalid model output) are mapped to HTTP
responses by the application's exception handler.
"""
import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from advisor_ai.core.logging import get_logger
from advisor_ai.routes.deps import get_ai_service, get_current_user_id
from advisor_ai.services.ai.orchestration import AIOrchestrationService
from advisor_ai.services.ai.schema import ExplanationResult, ExtractionResult, RecommendationResult
from advisor_ai.services.suitability.flags import SuitabilityFlagSet

logger = get_logger(__name__)

router = APIRouter()


class RecommendationRequest(BaseModel):
    client_profile: Dict[str, Any]
    candidate_products: List[Dict[str, Any]] = Field(..., min_length=1)


class SuitabilityRequest(BaseModel):
    application_id: str = Field(..., min_length=1)
    application_snapshot: Dict[str, Any]
    product: Dict[str, Any]


class SuitabilityResponse(BaseModel):
    flag_set: SuitabilityFlagSet
    passed: bool
    all_acknowledged: bool


class ExtractionRequest(BaseModel):
    document_text: str = Field(..., min_length=1)
    expected_fields: Optional[List[str]] = None


class ExplanationRequest(BaseModel):
    quote_snapshot: Dict[str, Any]


class BudgetResponse(BaseModel):
    user_id: str
    date: datetime.date
    tokens_consumed: int
    limit: int
    remaining: int


@router.post("/recommendations", response_model=RecommendationResult)
async def recommend_products(
    body: RecommendationRequest,
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    """Rank up to three of the candidate products for the client."""
    try:
        return await service.recommend_products(user_id, body.client_profile, body.candidate_products)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/suitability", response_model=SuitabilityResponse)
async def check_suitability(
    body: SuitabilityRequest,
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    """Run a suitability check; the result becomes the application's current flag set."""
    outcome = await service.check_suitability(
        user_id,
        body.application_id,
        body.application_snapshot,
        body.product,
    )
    return SuitabilityResponse(
        flag_set=outcome.flag_set,
        passed=outcome.flag_set.passed,
        all_acknowledged=outcome.flag_set.all_acknowledged(),
    )


@router.post("/extractions", response_model=ExtractionResult)
async def extract_document(
    body: ExtractionRequest,
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    try:
        return await service.extract_document(user_id, body.document_text, body.expected_fields)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/explanations", response_model=ExplanationResult)
async def explain_quote(
    body: ExplanationRequest,
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    return await service.explain_quote(user_id, body.quote_snapshot)


@router.get("/budget", response_model=BudgetResponse)
async def remaining_budget(
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    """Today's token usage for the caller (UTC day)."""
    counter = await service.remaining_budget(user_id)
    return BudgetResponse(
        user_id=counter.user_id,
        date=counter.day,
        tokens_consumed=counter.tokens_consumed,
        limit=counter.limit,
        remaining=counter.remaining,
    )
