"""
Post-session summaries and mock interview reports.

The session log handed to the model is rebuilt from stored events and passed
through the guardrails again; lines flagged as prompt injection are replaced
by a placeholder. Model output is normalized into a fixed report shape so a
malformed or partial answer never reaches the caller.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .guardrails import sanitize_copilot_text

SUMMARY_TYPE = "final"
REPORT_SUMMARY_TYPES = ("mock_interview_report", SUMMARY_TYPE)

# Events read back when summarizing a session
MAX_SUMMARY_EVENTS = 250

FILTERED_LINE = "[FILTERED_PROMPT_INJECTION_CONTENT]"

SUMMARY_SYSTEM_PROMPT = (
    "Summarize interview sessions for candidate coaching. "
    "Be specific, concise, and actionable. Return JSON only."
)

HIRING_SIGNALS = ("strong_no_hire", "no_hire", "lean_no_hire", "lean_hire", "hire", "strong_hire")

RUBRIC_DIMENSIONS = (
    "communication",
    "technical_accuracy",
    "problem_solving",
    "structure",
    "ownership",
    "role_fit",
)

FALLBACK_SUMMARY_TEXT = "Summary generated with fallback template."

_FALLBACK_RECOMMENDATIONS = {
    "communication": (3, "Tighten verbal structure and reduce filler."),
    "technical_accuracy": (3, "Use more precise terminology and validation details."),
    "problem_solving": (3, "Make reasoning explicit and compare alternatives."),
    "structure": (2, "Lead with an answer, then support with 2-3 points."),
    "ownership": (3, "Quantify personal impact and decision-making scope."),
    "role_fit": (3, "Map examples directly to job requirements."),
}


@dataclass(frozen=True)
class SessionSummary:
    """Summary text plus the payload stored beside it."""
    content: str
    payload: Dict[str, Any]


def compact_session_log(events: Iterable[Any]) -> str:
    """Render stored events as "[speaker] text" lines, oldest first."""
    lines = []
    for event in events:
        payload = event.payload if isinstance(event.payload, dict) else {}
        raw = payload.get("text") if isinstance(payload.get("text"), str) else ""
        speaker = payload.get("speaker")
        if not isinstance(speaker, str):
            speaker = getattr(event.event_type, "value", str(event.event_type))
        cleaned = sanitize_copilot_text(raw)
        text = FILTERED_LINE if cleaned.has_prompt_injection else cleaned.sanitized
        lines.append(f"[{speaker}] {text}")
    return "\n".join(lines)


def build_summary_prompt(mode: str, session_log: str) -> List[Dict[str, str]]:
    """Build chat messages asking for a coaching summary with a scored rubric."""
    dimensions = ", ".join(RUBRIC_DIMENSIONS)
    user_content = (
        f"Mode: {mode}\n\nSession log:\n{session_log}\n\n"
        "Return JSON with keys: summary (string), strengths (string[]), "
        "weaknesses (string[]), next_steps (string[]), "
        "overall_score (0-100), "
        f"hiring_signal (one of {', '.join(HIRING_SIGNALS)}), "
        f"rubric (object with keys {dimensions}; each has score 1-5, "
        "evidence, recommendation)."
    )
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def fallback_report(mode: str) -> Dict[str, Any]:
    """Neutral report used when the model cannot be reached."""
    return {
        "version": "v1",
        "mode": mode,
        "overall_score": 64,
        "hiring_signal": "lean_no_hire",
        "summary": (
            "Candidate stayed engaged and showed baseline competency, "
            "with room to improve depth and structure."
        ),
        "strengths": ["Stayed engaged and completed the full mock interview."],
        "weaknesses": ["Answers need tighter structure and stronger role-specific examples."],
        "next_steps": ["Practice concise STAR responses and measurable outcomes for core role questions."],
        "rubric": {
            name: {"score": score, "evidence": "", "recommendation": recommendation}
            for name, (score, recommendation) in _FALLBACK_RECOMMENDATIONS.items()
        },
    }


def _clamp(value: Any, low: int, high: int, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    return max(low, min(high, int(round(value))))


def _strings(value: Any, default: List[str]) -> List[str]:
    if not isinstance(value, list):
        return list(default)
    return [item for item in value if isinstance(item, str)]


def _dimension(value: Any) -> Dict[str, Any]:
    source = value if isinstance(value, Mapping) else {}
    return {
        "score": _clamp(source.get("score"), 1, 5, 3),
        "evidence": source.get("evidence") if isinstance(source.get("evidence"), str) else "",
        "recommendation": (
            source.get("recommendation") if isinstance(source.get("recommendation"), str) else ""
        ),
    }


def normalize_report(raw: Any, mode: str) -> Dict[str, Any]:
    """Coerce arbitrary model or stored output into the v1 report shape.

    Missing or invalid fields take the fallback values; scores are clamped
    (overall 0-100, rubric 1-5).
    """
    base = fallback_report(mode)
    source = raw if isinstance(raw, Mapping) else {}
    rubric = source.get("rubric") if isinstance(source.get("rubric"), Mapping) else {}
    signal = source.get("hiring_signal")

    return {
        "version": "v1",
        "mode": mode,
        "overall_score": _clamp(source.get("overall_score"), 0, 100, base["overall_score"]),
        "hiring_signal": signal if signal in HIRING_SIGNALS else base["hiring_signal"],
        "summary": source["summary"] if isinstance(source.get("summary"), str) else base["summary"],
        "strengths": _strings(source.get("strengths"), base["strengths"]),
        "weaknesses": _strings(source.get("weaknesses"), base["weaknesses"]),
        "next_steps": _strings(source.get("next_steps"), base["next_steps"]),
        "rubric": {name: _dimension(rubric.get(name)) for name in RUBRIC_DIMENSIONS},
    }


def report_payload(report: Dict[str, Any]) -> Dict[str, Any]:
    """Summary payload carrying the report next to its flat lists."""
    return {
        "mode": report["mode"],
        "strengths": report["strengths"],
        "weaknesses": report["weaknesses"],
        "next_steps": report["next_steps"],
        "report": report,
    }


def parse_summary_content(content: Optional[str], mode: str) -> SessionSummary:
    """Parse model output into summary text and a report payload."""
    parsed: Dict[str, Any] = {}
    try:
        candidate = json.loads(content or "{}")
        if isinstance(candidate, dict):
            parsed = candidate
    except (TypeError, ValueError):
        pass

    report = normalize_report(parsed, mode)
    text = parsed.get("summary") if isinstance(parsed.get("summary"), str) else None
    return SessionSummary(
        content=text.strip() if text and text.strip() else "Session summary generated.",
        payload=report_payload(report),
    )


def fallback_summary(mode: str) -> SessionSummary:
    return SessionSummary(content=FALLBACK_SUMMARY_TEXT, payload=report_payload(fallback_report(mode)))


def find_report_source(summaries: Sequence[Any]) -> Optional[Any]:
    """Return the newest summary whose payload carries report data."""
    for summary in summaries:
        payload = summary.payload if isinstance(summary.payload, Mapping) else {}
        if payload.get("report") or payload.get("rubric") or payload.get("overall_score"):
            return summary
    return None


def report_from_summary(summary: Any, mode: str) -> Dict[str, Any]:
    payload = summary.payload if isinstance(summary.payload, Mapping) else {}
    return normalize_report(payload.get("report") or payload, mode)
