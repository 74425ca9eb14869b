"""Content suggestion capability: proposes invoice line items for a job.

Suggesters are fallible and low-trust. Anything they return is validated
here; callers treat ``SuggestionError`` (or any other failure) as a signal
to fall back to deterministic pricing.
"""

import json
import re
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

SYSTEM_PROMPT = """You draft invoice line items for {business_name}, a field-services company.

Use the pricing rules provided. Amounts are integers in cents.
Never invent services that are not described in the job.

Respond with only a JSON object:
{{"line_items": [{{"description": str, "quantity": number, "unit_price": int}}],
  "confidence": number between 0 and 1,
  "reasoning": str}}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class SuggestionError(Exception):
    """The suggester failed or returned unusable output."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class SuggestedLineItem(BaseModel):
    description: str = Field(min_length=1, max_length=500)
    quantity: Decimal = Field(gt=0)
    unit_price: int = Field(ge=0)


class Suggestion(BaseModel):
    line_items: list[SuggestedLineItem]
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


@dataclass
class SuggestionContext:
    """What the suggester sees about a completed job."""

    job_id: int
    service_type: str
    business_name: str
    description: str | None = None
    customer_name: str | None = None
    area_sqft: Decimal | None = None
    hours: Decimal | None = None
    quoted_amount: int | None = None
    pricing: dict[str, Any] = field(default_factory=dict)

    def to_prompt(self) -> str:
        payload = {k: v for k, v in asdict(self).items() if k != "business_name"}
        return "Draft line items for this completed job:\n" + json.dumps(
            payload, default=str, indent=2
        )


class ContentSuggester(Protocol):
    """Anything that can propose line items for a job."""

    async def suggest(self, context: SuggestionContext) -> Suggestion: ...


def parse_suggestion(raw: str, provider: str | None = None) -> Suggestion:
    """Parse a model's text reply into a validated Suggestion."""
    if not raw or not raw.strip():
        raise SuggestionError("empty response", provider=provider)

    cleaned = _FENCE_RE.sub("", raw.strip())
    try:
        return Suggestion.model_validate_json(cleaned)
    except ValidationError as e:
        raise SuggestionError(f"malformed suggestion: {e}", provider=provider) from e
