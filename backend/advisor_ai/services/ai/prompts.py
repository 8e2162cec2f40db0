"""
Prompt Compiler: deterministic, versioned prompt rendering per feature.

Templates are Jinja2 with StrictUndefined (a missing context key is an error,
never an empty string). Structured inputs are rendered as canonical JSON so
that identical context always yields identical prompt text.

Cache fingerprints are computed over the *normalized business input* plus the
template version, not over the rendered text: editing one feature's template
only invalidates that feature's cache when its version is bumped.
"""
import hashlib
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from jinja2 import Environment, StrictUndefined, Template

from advisor_ai.services.ai.schema import Feature

# Per-message framing overhead used by chat-completion APIs.
MESSAGE_OVERHEAD_TOKENS = 4
CHARS_PER_TOKEN = 4


def canonical_json(value: Any, indent: Optional[int] = None) -> str:
    separators = (",", ": ") if indent else (",", ":")
    return json.dumps(
        value,
        sort_keys=True,
        ensure_ascii=False,
        indent=indent,
        separators=separators,
        default=str,
    )


def normalize_input(value: Any) -> Any:
    """
    Normalize business input for fingerprinting.

    - mapping keys sorted (via canonical JSON), None values dropped
    - strings trimmed with inner whitespace collapsed
    - sequences normalized element-wise (order preserved)
    """
    if isinstance(value, Mapping):
        return {str(k): normalize_input(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [normalize_input(item) for item in value]
    if isinstance(value, str):
        return " ".join(value.split())
    return value


@dataclass(frozen=True)
class PromptTemplate:
    feature: Feature
    version: str
    system: str
    user: Optional[str]
    max_tokens: int


@dataclass(frozen=True)
class CompiledPrompt:
    feature: Feature
    template_version: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    max_tokens: int = 512

    @property
    def text(self) -> str:
        return "\n\n".join(message["content"] for message in self.messages)


RECOMMEND_TEMPLATE = PromptTemplate(
    feature=Feature.RECOMMEND,
    version="recommend-v3",
    max_tokens=600,
    system=(
        "You are a financial product advisor assistant. Rank the most suitable "
        "products for the client from the candidate list only.\n\n"
        "You MUST respond with a single JSON object only:\n"
        '{"recommendations": [{"product_id": "<candidate id>", "rank": 1, '
        '"rationale": "<one or two sentences>"}]}\n'
        "Return between 1 and 3 recommendations with unique ranks 1..3. "
        "Do not include any explanation outside the JSON object."
    ),
    user=(
        "Client profile:\n{{ client_profile | canonical }}\n\n"
        "Candidate products:\n{{ candidate_products | canonical }}"
    ),
)

SUITABILITY_TEMPLATE = PromptTemplate(
    feature=Feature.SUITABILITY,
    version="suitability-v2",
    max_tokens=800,
    system=(
        "You are a compliance reviewer checking whether an application is "
        "suitable for the selected product.\n\n"
        "You MUST respond with a single JSON object only:\n"
        '{"passed": true|false, "flags": [{"item_id": "<short-kebab-id>", '
        '"field": "<application field>", "severity": "blocking|warning|info", '
        '"issue": "<what is wrong>", "suggestion": "<how to resolve>"}]}\n'
        "Use severity \"blocking\" only for issues that must be resolved or "
        "explicitly overridden before submission."
    ),
    user=(
        "Product:\n{{ product | canonical }}\n\n"
        "Application:\n{{ application_snapshot | canonical }}"
    ),
)

EXTRACTION_TEMPLATE = PromptTemplate(
    feature=Feature.EXTRACTION,
    version="extraction-v2",
    max_tokens=800,
    system=(
        "You extract structured fields from already-transcribed financial "
        "documents.\n\n"
        "You MUST respond with a single JSON object only:\n"
        '{"fields": {"<field name>": <value or null>}, '
        '"confidence": "high|medium|low", "requires_review": true|false}\n'
        "Set requires_review to true whenever a value is ambiguous or missing."
    ),
    user=(
        "{% if expected_fields is defined and expected_fields %}Fields to extract: {{ expected_fields | join(', ') }}\n\n{% endif %}"
        "Document text:\n\"\"\"\n{{ document_text }}\n\"\"\""
    ),
)

EXPLAIN_TEMPLATE = PromptTemplate(
    feature=Feature.EXPLAIN,
    version="explain-v1",
    max_tokens=500,
    system=(
        "You explain insurance and investment quotes to clients in plain "
        "language. Do not invent figures that are not in the quote.\n\n"
        "You MUST respond with a single JSON object only:\n"
        '{"explanation": "<plain-language explanation>"}'
    ),
    user="Quote:\n{{ quote_snapshot | canonical }}",
)

CHAT_TEMPLATE = PromptTemplate(
    feature=Feature.CHAT,
    version="chat-v2",
    max_tokens=700,
    system=(
        "You are an assistant for financial advisers using the advice platform. "
        "Answer concisely. If you are unsure, say so rather than guessing."
        "{% if session_context is defined and session_context %}\n\nSession context:\n{{ session_context | canonical }}{% endif %}"
        "{% if page_context is defined and page_context %}\n\nCurrent page context:\n{{ page_context | canonical }}{% endif %}"
    ),
    user=None,
)

DEFAULT_TEMPLATES = (
    RECOMMEND_TEMPLATE,
    SUITABILITY_TEMPLATE,
    EXTRACTION_TEMPLATE,
    EXPLAIN_TEMPLATE,
    CHAT_TEMPLATE,
)


class PromptCompiler:
    """Renders feature prompts and computes cache fingerprints."""

    def __init__(self, templates=DEFAULT_TEMPLATES):
        self._env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=False,
        )
        self._env.filters["canonical"] = lambda value: canonical_json(value, indent=2)
        self._templates: Dict[Feature, PromptTemplate] = {}
        self._compiled: Dict[Feature, Dict[str, Optional[Template]]] = {}
        for template in templates:
            self._templates[template.feature] = template
            self._compiled[template.feature] = {
                "system": self._env.from_string(template.system),
                "user": self._env.from_string(template.user) if template.user else None,
            }

    def template(self, feature: Feature) -> PromptTemplate:
        try:
            return self._templates[feature]
        except KeyError:
            raise ValueError(f"No prompt template registered for feature {feature.value!r}") from None

    def template_version(self, feature: Feature) -> str:
        return self.template(feature).version

    def compile(
        self,
        feature: Feature,
        context: Mapping[str, Any],
        history: Optional[List[Dict[str, str]]] = None,
    ) -> CompiledPrompt:
        """
        Render the feature's prompt.

        Args:
            feature: Feature to render
            context: Template variables
            history: Prior conversation turns appended after the system message
                (chat only)
        """
        template = self.template(feature)
        compiled = self._compiled[feature]

        messages = [{"role": "system", "content": compiled["system"].render(**context).strip()}]
        if history:
            messages.extend({"role": turn["role"], "content": turn["content"]} for turn in history)
        if compiled["user"] is not None:
            messages.append({"role": "user", "content": compiled["user"].render(**context).strip()})

        return CompiledPrompt(
            feature=feature,
            template_version=template.version,
            messages=messages,
            max_tokens=template.max_tokens,
        )

    def fingerprint(self, feature: Feature, business_input: Any) -> str:
        """SHA-256 over (feature, normalized input, template version)."""
        material = canonical_json(
            {
                "feature": feature.value,
                "input": normalize_input(business_input),
                "template_version": self.template_version(feature),
            }
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


def estimate_tokens(prompt: CompiledPrompt) -> int:
    """
    Conservative token estimate for budgeting: ~4 characters per token for
    the prompt, per-message overhead, plus the full completion allowance.
    """
    prompt_tokens = sum(
        math.ceil(len(message["content"]) / CHARS_PER_TOKEN) + MESSAGE_OVERHEAD_TOKENS
        for message in prompt.messages
    )
    return prompt_tokens + 2 + prompt.max_tokens
