"""Decision providers."""

from .llm_provider import ILLMProvider, LLMProvider
from .provider import LLMDecisionProvider, extract_json, parse_decision

__all__ = [
    "ILLMProvider",
    "LLMDecisionProvider",
    "LLMProvider",
    "extract_json",
    "parse_decision",
]
