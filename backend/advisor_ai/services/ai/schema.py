"""
Pydantic models for feature outputs and the output validator.

Each feature has a strict output contract. Raw model text is parsed as JSON
(a surrounding markdown code fence is tolerated) and validated into a typed
result; anything non-conforming raises SchemaValidationError, which is
distinct from upstream unavailability.

Contracts:
- recommend:   {"recommendations": [{"product_id", "rank" 1..3 unique, "rationale"}]}
- suitability: {"passed": bool, "flags": [{"item_id", "field", "severity", "issue", "suggestion"}]}
- extraction:  {"fields": {...}, "confidence": "high|medium|low", "requires_review": bool}
- explain:     {"explanation": "..."}
"""
import json
import re
from enum import Enum
from typing import Any, Collection, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from advisor_ai.core.errors import SchemaValidationError


class Feature(str, Enum):
    RECOMMEND = "recommend"
    SUITABILITY = "suitability"
    EXTRACTION = "extraction"
    EXPLAIN = "explain"
    CHAT = "chat"


class Severity(str, Enum):
    """Suitability flag severity. BLOCKING items gate application submission."""

    BLOCKING = "blocking"
    WARNING = "warning"
    INFO = "info"


BLOCKING_SEVERITIES = frozenset({Severity.BLOCKING})


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ProductRecommendation(_StrictModel):
    product_id: str = Field(..., min_length=1)
    rank: int = Field(..., ge=1, le=3)
    rationale: str = Field(..., min_length=1)


class RecommendationResult(_StrictModel):
    """Up to three recommendations, sorted by rank."""

    recommendations: List[ProductRecommendation] = Field(..., min_length=1, max_length=3)

    @field_validator("recommendations")
    @classmethod
    def validate_ranks(cls, value: List[ProductRecommendation]) -> List[ProductRecommendation]:
        ranks = [item.rank for item in value]
        if len(set(ranks)) != len(ranks):
            raise ValueError("recommendation ranks must be unique")
        product_ids = [item.product_id for item in value]
        if len(set(product_ids)) != len(product_ids):
            raise ValueError("a product may only be recommended once")
        return sorted(value, key=lambda item: item.rank)


class SuitabilityFlag(_StrictModel):
    item_id: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    severity: Severity
    issue: str = Field(..., min_length=1)
    suggestion: str

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower().strip()
        return value


class SuitabilityResult(_StrictModel):
    passed: bool
    flags: List[SuitabilityFlag] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_item_ids(self) -> "SuitabilityResult":
        item_ids = [flag.item_id for flag in self.flags]
        if len(set(item_ids)) != len(item_ids):
            raise ValueError("flag item_id values must be unique")
        return self


class ExtractionResult(_StrictModel):
    fields: Dict[str, Any]
    confidence: Literal["high", "medium", "low"]
    requires_review: bool

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower().strip()
        return value


class ExplanationResult(_StrictModel):
    explanation: str = Field(..., min_length=1)


FeatureResult = Union[RecommendationResult, SuitabilityResult, ExtractionResult, ExplanationResult]

RESULT_MODELS = {
    Feature.RECOMMEND: RecommendationResult,
    Feature.SUITABILITY: SuitabilityResult,
    Feature.EXTRACTION: ExtractionResult,
    Feature.EXPLAIN: ExplanationResult,
}

_CODE_FENCE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n(?P<body>.*?)\n?```$", re.DOTALL)


def _strip_code_fence(raw_text: str) -> str:
    text = raw_text.strip()
    match = _CODE_FENCE.match(text)
    if match:
        return match.group("body").strip()
    return text


def parse_json_payload(feature: Feature, raw_text: Optional[str]) -> Any:
    """Parse raw model text as JSON, raising SchemaValidationError on failure."""
    if raw_text is None or not raw_text.strip():
        raise SchemaValidationError(feature.value, "Model returned an empty response", raw_output=raw_text)
    try:
        return json.loads(_strip_code_fence(raw_text))
    except json.JSONDecodeError as exc:
        raise SchemaValidationError(
            feature.value,
            f"Model output is not valid JSON: {exc.msg}",
            raw_output=raw_text,
        ) from exc


def validate(
    feature: Feature,
    raw_text: Optional[str],
    allowed_product_ids: Optional[Collection[str]] = None,
) -> FeatureResult:
    """
    Validate raw model text into the feature's typed result.

    Args:
        feature: Feature whose contract applies (chat has no contract)
        raw_text: Model output text
        allowed_product_ids: Candidate product ids a recommendation may reference

    Raises:
        SchemaValidationError if the text does not satisfy the contract.
    """
    model = RESULT_MODELS.get(feature)
    if model is None:
        raise ValueError(f"Feature {feature.value!r} has no output contract")

    payload = parse_json_payload(feature, raw_text)
    # A bare list is accepted as the recommendation list itself.
    if feature is Feature.RECOMMEND and isinstance(payload, list):
        payload = {"recommendations": payload}

    try:
        result = model.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(
            feature.value,
            f"Invalid {feature.value} payload: {exc}",
            raw_output=raw_text,
        ) from exc

    if allowed_product_ids is not None and isinstance(result, RecommendationResult):
        allowed = set(allowed_product_ids)
        unknown = [item.product_id for item in result.recommendations if item.product_id not in allowed]
        if unknown:
            raise SchemaValidationError(
                feature.value,
                f"Recommended products are not among the candidates: {unknown}",
                raw_output=raw_text,
            )

    return result
