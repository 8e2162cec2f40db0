"""Document field extraction agent (input is already-transcribed text)."""
from typing import Any, Dict, Optional, Sequence

from advisor_ai.services.ai.agents.base import AgentResult, FeatureAgent
from advisor_ai.services.ai.schema import Feature


class DocumentExtractionAgent(FeatureAgent):
    feature = Feature.EXTRACTION

    async def extract(
        self,
        user_id: str,
        document_text: str,
        expected_fields: Optional[Sequence[str]] = None,
    ) -> AgentResult:
        if not document_text or not document_text.strip():
            raise ValueError("document_text must not be empty")

        business_input: Dict[str, Any] = {"document_text": document_text}
        if expected_fields:
            business_input["expected_fields"] = sorted({field.strip() for field in expected_fields})

        context = {
            "document_text": document_text.strip(),
            "expected_fields": business_input.get("expected_fields"),
        }
        return await self.run(user_id, business_input, context=context)
