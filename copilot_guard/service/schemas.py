"""
Pydantic schemas for copilot request bodies.

Field aliases match the camelCase keys sent by the browser extension and web
client; snake_case names are accepted too.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from copilot_guard.core.guardrails import MAX_TEXT_LENGTH

PURGE_CONFIRMATION = "DELETE ALL COPILOT DATA"

MAX_TRANSCRIPT_CHUNKS = 30


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartSessionBody(_Body):
    """Request schema for starting a session."""

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    interview_session_id: Optional[UUID] = Field(None, alias="interviewSessionId")
    metadata: Optional[Dict[str, Any]] = None


class StopSessionBody(_Body):
    """Request schema for stopping a session."""

    session_id: UUID = Field(..., alias="sessionId")


class IngestEventBody(_Body):
    """Request schema for a transcript or system event.

    `client_timestamp` is when the client captured the text; consent is
    judged at that instant.
    """

    event_type: Literal["transcript", "system"] = Field("transcript", alias="eventType")
    speaker: Literal["interviewer", "candidate", "system"] = "interviewer"
    text: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    auto_suggest: Optional[bool] = Field(None, alias="autoSuggest")
    client_timestamp: Optional[datetime] = Field(None, alias="clientTimestamp")


class TranscriptChunk(_Body):
    """One speech-to-text chunk of a transcript batch.

    Interim chunks carry an `interim_id`; resending the same interim chunk
    returns the stored event instead of a duplicate.
    """

    speaker: Literal["interviewer", "candidate", "system"] = "interviewer"
    text: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    is_final: bool = Field(True, alias="isFinal")
    interim_id: Optional[str] = Field(None, alias="interimId", min_length=1, max_length=120)
    client_timestamp: Optional[datetime] = Field(None, alias="clientTimestamp")
    auto_suggest: Optional[bool] = Field(None, alias="autoSuggest")

    @field_validator("text", "interim_id", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class TranscriptBody(_Body):
    """Request schema for a batch of transcript chunks."""

    chunks: List[TranscriptChunk] = Field(..., min_length=1, max_length=MAX_TRANSCRIPT_CHUNKS)


class PurgeBody(_Body):
    """Request schema for deleting all of a user's copilot data."""

    confirmation: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.confirmation == PURGE_CONFIRMATION


def describe_validation_error(error: ValidationError) -> List[Dict[str, Any]]:
    """Reduce pydantic errors to JSON-safe location/message pairs."""
    return [
        {
            "loc": [str(part) for part in item["loc"]],
            "msg": item["msg"],
            "type": item["type"],
        }
        for item in error.errors()
    ]
