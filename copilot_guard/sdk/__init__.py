"""
SDK for Copilot Guard.

Provides the inference client used for copilot suggestions.
"""

from .openai_client import SuggestionClient

__all__ = ["SuggestionClient"]
