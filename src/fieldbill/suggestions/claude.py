"""Claude (Anthropic) line-item suggester."""

from typing import Any

import anthropic
import structlog

from fieldbill.config import get_settings
from fieldbill.suggestions.base import (
    SYSTEM_PROMPT,
    Suggestion,
    SuggestionContext,
    SuggestionError,
    parse_suggestion,
)

logger = structlog.get_logger(__name__)


class ClaudeSuggester:
    """Asks Claude for invoice line items as a JSON object."""

    provider = "claude"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.anthropic_api_key.get_secret_value()
        self._model = model or settings.claude_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature

        self._client = anthropic.Anthropic(api_key=self._api_key)
        self._logger = logger.bind(client="claude", model=self._model)

    @staticmethod
    def _extract_text(response: anthropic.types.Message) -> str:
        return "".join(block.text for block in response.content if block.type == "text")

    async def suggest(self, context: SuggestionContext) -> Suggestion:
        """Request line items for a job.

        Raises:
            SuggestionError: On API failure or unusable output.
        """
        self._logger.debug("requesting_suggestion", job_id=context.job_id)

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "system": SYSTEM_PROMPT.format(business_name=context.business_name),
            "messages": [{"role": "user", "content": context.to_prompt()}],
        }

        # Synchronous SDK call behind the async interface
        try:
            response = self._client.messages.create(**kwargs)
        except anthropic.APIError as e:
            self._logger.error("api_error", error=str(e))
            raise SuggestionError(str(e), provider=self.provider) from e

        suggestion = parse_suggestion(self._extract_text(response), provider=self.provider)
        self._logger.info(
            "suggestion_received",
            job_id=context.job_id,
            line_items=len(suggestion.line_items),
            confidence=suggestion.confidence,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return suggestion
