"""
Suggestion prompt construction and response parsing.

Prompts are built only from text that already went through the content
guardrails. Model output is parsed tolerantly: anything that is not a JSON
object is treated as a plain short answer.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

SYSTEM_PROMPT = (
    "You are an interview copilot. Return practical interview guidance only. "
    "Never invent user experience details not in context. "
    "Keep output concise and immediately usable."
)

MODE_HINTS = {
    "coding": "Focus on technical reasoning, constraints, edge cases, and complexity.",
    "phone": "Focus on concise and clear phone-screen style responses.",
    "video": "Focus on structured, confident video-interview responses.",
}
DEFAULT_MODE_HINT = "Focus on behavioral interview responses."

NO_SUGGESTION = "No suggestion generated."


@dataclass(frozen=True)
class ParsedSuggestion:
    short_answer: str
    talking_points: List[str]
    follow_up: Optional[str] = None
    complexity: Optional[str] = None
    edge_cases: List[str] = field(default_factory=list)
    checklist: List[str] = field(default_factory=list)
    structured: Dict[str, Any] = field(default_factory=dict)


def build_suggestion_prompt(mode: str, transcript_text: str, latest_question: str) -> List[Dict[str, str]]:
    """Build chat messages asking for a structured suggestion."""
    mode_hint = MODE_HINTS.get(mode, DEFAULT_MODE_HINT)
    coding_fields = ""
    if mode == "coding":
        coding_fields = (
            ',\n  "complexity": "time/space complexity summary in one short line",'
            '\n  "edge_cases": ["edge case 1", "edge case 2"],'
            '\n  "checklist": ["step 1", "step 2", "step 3"]'
        )

    user_content = (
        f"Interview mode: {mode}\n{mode_hint}\n\n"
        f"Recent transcript:\n{transcript_text}\n\n"
        f"Latest interviewer question:\n{latest_question}\n\n"
        "Return JSON with this exact shape:\n{\n"
        '  "short_answer": "<= 90 words",\n'
        '  "talking_points": ["bullet1", "bullet2", "bullet3"],\n'
        '  "follow_up": "one short clarifying follow-up user can ask if needed"'
        f"{coding_fields}\n}}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def build_transcript_text(events: Iterable[Any]) -> str:
    """Render transcript events as "speaker: text" lines, oldest first."""
    lines = []
    for event in events:
        payload = event.payload if isinstance(event.payload, dict) else {}
        speaker = payload.get("speaker") if isinstance(payload.get("speaker"), str) else "unknown"
        text = payload.get("text") if isinstance(payload.get("text"), str) else ""
        lines.append(f"{speaker}: {text}")
    return "\n".join(lines)


def _as_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _as_string_list(value: Any, max_items: int = 6) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [item.strip() for item in value if isinstance(item, str)]
    return [item for item in items if item][:max_items]


def parse_suggestion_content(content: str, mode: str) -> ParsedSuggestion:
    """Parse model output into a suggestion.

    Coding-only fields are read only in coding mode.
    """
    parsed: Dict[str, Any] = {"short_answer": content}
    try:
        candidate = json.loads(content)
        if isinstance(candidate, dict):
            parsed = candidate
    except (TypeError, ValueError):
        pass

    short_answer = _as_string(parsed.get("short_answer")) or NO_SUGGESTION
    talking_points = _as_string_list(parsed.get("talking_points"))
    follow_up = _as_string(parsed.get("follow_up"))

    complexity = None
    edge_cases: List[str] = []
    checklist: List[str] = []
    if mode == "coding":
        complexity = _as_string(parsed.get("complexity"))
        edge_cases = _as_string_list(parsed.get("edge_cases"), 8)
        checklist = _as_string_list(parsed.get("checklist"), 10)

    structured: Dict[str, Any] = {
        "short_answer": short_answer,
        "talking_points": talking_points,
    }
    if follow_up:
        structured["follow_up"] = follow_up
    if complexity:
        structured["complexity"] = complexity
    if edge_cases:
        structured["edge_cases"] = edge_cases
    if checklist:
        structured["checklist"] = checklist

    return ParsedSuggestion(
        short_answer=short_answer,
        talking_points=talking_points,
        follow_up=follow_up,
        complexity=complexity,
        edge_cases=edge_cases,
        checklist=checklist,
        structured=structured,
    )
