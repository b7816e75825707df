"""
OpenAI client wrapper for copilot suggestions and session summaries.

Builds the suggestion prompt from already-sanitized text and parses the model
output into a structured suggestion.
"""

from typing import Optional

from openai import OpenAI

from ..core.report import SessionSummary, build_summary_prompt, parse_summary_content
from ..core.suggestion import ParsedSuggestion, build_suggestion_prompt, parse_suggestion_content


class SuggestionClient:
    """Generates interview suggestions through OpenAI chat completions.

    Inputs must already have passed the content guardrails; this client does
    not sanitize. API failures propagate so the caller can fall back.
    """

    def __init__(self, model: str = "gpt-4o-mini", temperature: float = 0.3, client: Optional[OpenAI] = None):
        """Initialize the suggestion client.

        Args:
            model: OpenAI model name (required)
            temperature: Sampling temperature
            client: Preconfigured OpenAI client; one is created from the
                environment when omitted

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.temperature = temperature
        self.client = client or OpenAI()

    def suggest(self, mode: str, transcript_text: str, latest_question: str) -> ParsedSuggestion:
        """Request a suggestion for the latest interviewer question.

        Args:
            mode: Interview mode (coding, phone, video, general)
            transcript_text: Recent sanitized transcript lines
            latest_question: Sanitized latest question

        Returns:
            ParsedSuggestion

        Raises:
            ValueError: If latest_question is empty
            OpenAI API errors: Propagated without modification
        """
        if not latest_question or not latest_question.strip():
            raise ValueError("latest_question is required and cannot be empty")

        response = self.client.chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            response_format={"type": "json_object"},
            messages=build_suggestion_prompt(mode, transcript_text, latest_question),
        )

        content = "{}"
        if response.choices and response.choices[0].message.content:
            content = response.choices[0].message.content
        return parse_suggestion_content(content, mode)

    def summarize(self, mode: str, session_log: str, temperature: float = 0.2) -> SessionSummary:
        """Request a coaching summary and scored report for a whole session.

        Args:
            mode: Interview mode
            session_log: Compacted, re-sanitized session log
            temperature: Sampling temperature for the summary

        Returns:
            SessionSummary with a normalized report payload

        Raises:
            OpenAI API errors: Propagated without modification
        """
        response = self.client.chat.completions.create(
            model=self.model,
            temperature=temperature,
            response_format={"type": "json_object"},
            messages=build_summary_prompt(mode, session_log),
        )

        content = "{}"
        if response.choices and response.choices[0].message.content:
            content = response.choices[0].message.content
        return parse_summary_content(content, mode)
