"""OpenAI GPT line-item suggester.

Also works against OpenAI-compatible servers via a custom base_url.
"""

from typing import Any

import openai
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


class OpenAISuggester:
    provider = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.openai_api_key.get_secret_value()
        self._base_url = base_url
        self._model = model or settings.gpt_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature

        client_kwargs: dict[str, Any] = {"api_key": self._api_key}
        if self._base_url:
            client_kwargs["base_url"] = self._base_url

        self._client = openai.OpenAI(**client_kwargs)
        self._logger = logger.bind(client=self.provider, model=self._model)

    async def suggest(self, context: SuggestionContext) -> Suggestion:
        self._logger.debug("requesting_suggestion", job_id=context.job_id)

        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {
                        "role": "system",
                        "content": SYSTEM_PROMPT.format(business_name=context.business_name),
                    },
                    {"role": "user", "content": context.to_prompt()},
                ],
                response_format={"type": "json_object"},
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except openai.OpenAIError as e:
            self._logger.error("api_error", error=str(e))
            raise SuggestionError(str(e), provider=self.provider) from e

        if not response.choices:
            raise SuggestionError("no choices returned", provider=self.provider)

        suggestion = parse_suggestion(
            response.choices[0].message.content or "", provider=self.provider
        )
        self._logger.info(
            "suggestion_received",
            job_id=context.job_id,
            line_items=len(suggestion.line_items),
            confidence=suggestion.confidence,
        )
        return suggestion
