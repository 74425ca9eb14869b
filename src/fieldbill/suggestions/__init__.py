"""Content suggestion clients for drafting invoice line items."""

from fieldbill.config import Settings, get_settings
from fieldbill.suggestions.base import (
    ContentSuggester,
    SuggestedLineItem,
    Suggestion,
    SuggestionContext,
    SuggestionError,
    parse_suggestion,
)
from fieldbill.suggestions.claude import ClaudeSuggester
from fieldbill.suggestions.openai_client import OpenAISuggester


def build_suggester(settings: Settings | None = None) -> ContentSuggester:
    """Create the suggester selected by SUGGESTION_PROVIDER."""
    settings = settings or get_settings()
    if settings.suggestion_provider == "openai":
        return OpenAISuggester()
    return ClaudeSuggester()


__all__ = [
    "ClaudeSuggester",
    "ContentSuggester",
    "OpenAISuggester",
    "SuggestedLineItem",
    "Suggestion",
    "SuggestionContext",
    "SuggestionError",
    "build_suggester",
    "parse_suggestion",
]
