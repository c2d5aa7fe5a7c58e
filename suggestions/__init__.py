from suggestions.advisor import SuggestionAdvisor, LLMSuggestionAdvisor
from suggestions.engine import SuggestionEngine, FALLBACK_MARKER

__all__ = ["SuggestionAdvisor", "LLMSuggestionAdvisor", "SuggestionEngine", "FALLBACK_MARKER"]
