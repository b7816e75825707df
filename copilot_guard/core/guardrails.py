"""
Content guardrails for text flowing toward inference.

Implements best-effort redaction and prompt-injection detection. These are
pattern heuristics: they miss some sensitive values and flag some harmless
ones (the card rule matches many long numeric identifiers, for example).

Pipeline Order:
1. Control characters - Strip non-printable characters, trim
2. Redaction - Replace sensitive values, recording only the rule label
3. Injection scan - Match signature phrases on the redacted text
4. Truncation - Cap the length last, after every rule has seen the full text,
   cutting only between words
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Pattern, Tuple

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 4000
TRUNCATION_MARKER = "…"

# Tab, newline and carriage return survive.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass(frozen=True)
class RedactionRule:
    """A labelled pattern and the placeholder that replaces its matches."""
    name: str
    pattern: Pattern[str]
    replacement: str


# Applied in order; earlier rules see the text first.
REDACTION_RULES: Tuple[RedactionRule, ...] = (
    RedactionRule(
        "email",
        re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE),
        "[REDACTED_EMAIL]",
    ),
    RedactionRule(
        "phone",
        re.compile(r"\b(?:\+?\d{1,3}[\s.-]?)?(?:\(?\d{2,4}\)?[\s.-]?)\d{3,4}[\s.-]?\d{3,4}\b"),
        "[REDACTED_PHONE]",
    ),
    RedactionRule(
        "ssn",
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        "[REDACTED_SSN]",
    ),
    RedactionRule(
        "credit_card",
        re.compile(r"\b(?:\d[ -]*?){13,16}\b"),
        "[REDACTED_CARD]",
    ),
    RedactionRule(
        "api_key",
        re.compile(r"\b(?:sk|pk)_[A-Za-z0-9]{16,}\b"),
        "[REDACTED_API_KEY]",
    ),
    RedactionRule(
        "bearer",
        re.compile(r"\bBearer\s+[A-Za-z0-9._-]{16,}\b", re.IGNORECASE),
        "Bearer [REDACTED_TOKEN]",
    ),
)

_PLACEHOLDERS = re.compile("|".join(re.escape(rule.replacement) for rule in REDACTION_RULES))

PROMPT_INJECTION_PATTERNS: Tuple[Pattern[str], ...] = (
    # Instruction override
    re.compile(r"ignore\s+(?:all\s+)?(?:previous|prior)\s+instructions?", re.IGNORECASE),
    re.compile(r"disregard\s+(?:all\s+)?(?:previous|prior|above)\s+instructions?", re.IGNORECASE),
    re.compile(r"reveal\s+(?:the\s+)?(?:system|developer)\s+prompt", re.IGNORECASE),
    # Role override
    re.compile(r"you\s+are\s+now\s+", re.IGNORECASE),
    re.compile(r"act\s+as\s+", re.IGNORECASE),
    # Jailbreak markers
    re.compile(r"jailbreak|do\s+anything\s+now|\bdan\b", re.IGNORECASE),
    re.compile(r"bypass\s+(?:guardrails|safety|policy)", re.IGNORECASE),
    # Tool / function call requests
    re.compile(r"tool\s+call|function\s+call", re.IGNORECASE),
)


@dataclass(frozen=True)
class SanitizedText:
    """Output of the guardrail pipeline.

    `redactions` holds the labels of rules that fired, never matched text.
    """
    sanitized: str
    redactions: List[str]
    has_prompt_injection: bool


def strip_control_characters(text: str) -> str:
    return _CONTROL_CHARS.sub("", text).strip()


def redact(text: str) -> Tuple[str, List[str]]:
    """Apply every redaction rule in order.

    Returns:
        The redacted text and the labels of the rules that matched, in rule order
    """
    labels: List[str] = []
    for rule in REDACTION_RULES:
        text, count = rule.pattern.subn(rule.replacement, text)
        if count:
            labels.append(rule.name)
    return text, labels


def detect_prompt_injection(text: str) -> bool:
    return any(pattern.search(text) for pattern in PROMPT_INJECTION_PATTERNS)


def truncate(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Cap text at max_length characters plus the truncation marker.

    The cut falls on whitespace at or before max_length and never inside a
    word or a redaction placeholder, so a truncated text matches no rule its
    full form did not. A leading word longer than the limit is dropped
    whole, leaving only the marker. Text this function already truncated is
    returned unchanged.
    """
    if len(text) <= max_length:
        return text
    if text.endswith(TRUNCATION_MARKER) and len(text) <= max_length + len(TRUNCATION_MARKER):
        return text
    cut = _last_break_at_or_before(text, max_length)
    return text[:cut].rstrip() + TRUNCATION_MARKER


def _last_break_at_or_before(text: str, index: int) -> int:
    protected = [m.span() for m in _PLACEHOLDERS.finditer(text)]
    for i in range(index, 0, -1):
        if not text[i].isspace():
            continue
        if any(start < i < end for start, end in protected):
            continue
        return i
    return 0


def sanitize_copilot_text(text: str, max_length: int = MAX_TEXT_LENGTH) -> SanitizedText:
    """Run the guardrail pipeline over one piece of text.

    Deterministic and total: any string, including an empty one, yields a
    result. Running it again over its own output changes nothing.

    Args:
        text: Raw transcript or event text
        max_length: Maximum length before the truncation marker

    Returns:
        SanitizedText with cleaned text, rule labels and the injection flag
    """
    if not isinstance(text, str):
        text = "" if text is None else str(text)

    # 1. Control characters
    cleaned = strip_control_characters(text)

    # 2. Redaction must precede the scan so a placeholder cannot hide a phrase
    cleaned, labels = redact(cleaned)

    # 3. Injection scan
    has_injection = detect_prompt_injection(cleaned)

    # 4. Truncation last
    cleaned = truncate(cleaned, max_length)

    if has_injection:
        logger.warning("Prompt injection signature detected (redactions=%s)", labels)

    return SanitizedText(
        sanitized=cleaned,
        redactions=labels,
        has_prompt_injection=has_injection,
    )
