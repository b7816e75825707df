"""
Request-level copilot operations.

Each public method is one independent request unit: it applies its rate
limit, validates input, authenticates and authorizes, then re-reads session
truth from the store. No session state is kept between calls.

Identity is issued elsewhere; callers pass the authenticated user id, or None
for an anonymous request. `client_key` identifies the caller for anonymous
rate limiting (typically the client address).
"""

import functools
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from copilot_guard.config.loader import CopilotConfig
from copilot_guard.core import consent
from copilot_guard.core.clock import as_utc, parse_iso, to_iso, utc_now
from copilot_guard.core.cursor import (
    cursor_for_event,
    filter_events_after_cursor,
    parse_event_cursor,
)
from copilot_guard.core.errors import CopilotError
from copilot_guard.core.guardrails import SanitizedText, sanitize_copilot_text
from copilot_guard.core.history import (
    compute_usage_aggregate,
    is_iso_date,
    parse_history_filters,
)
from copilot_guard.core.latency import LatencyTracker, log_latency_metrics, timings_to_metadata
from copilot_guard.core.quota import QuotaMeter, can_admit
from copilot_guard.core.report import (
    MAX_SUMMARY_EVENTS,
    REPORT_SUMMARY_TYPES,
    SUMMARY_TYPE,
    compact_session_log,
    fallback_summary,
    find_report_source,
    report_from_summary,
)
from copilot_guard.core.retention import RetentionSweeper, resolve_retention_policy
from copilot_guard.core.session import SessionLifecycleManager, refresh_heartbeat
from copilot_guard.core.suggestion import build_transcript_text
from copilot_guard.storage.models import (
    TERMINAL_STATUSES,
    CopilotEvent,
    CopilotSession,
    EventType,
    SessionStatus,
)
from copilot_guard.storage.quota_store import QuotaRepository
from copilot_guard.storage.rate_limit import FixedWindowRateLimiter
from copilot_guard.storage.repository import (
    CopilotRepository,
    DeleteFilter,
    SessionQuery,
)
from .responses import (
    ServiceResponse,
    copilot_ok,
    internal_error,
    json_error,
    rate_limited,
    session_expired_response,
)
from .schemas import (
    IngestEventBody,
    PurgeBody,
    StartSessionBody,
    StopSessionBody,
    TranscriptBody,
    describe_validation_error,
)

logger = logging.getLogger(__name__)

# Rate limit rules: name -> (requests, window in ms)
RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "start": (20, 60_000),
    "stop": (30, 60_000),
    "heartbeat": (240, 60_000),
    "events": (90, 60_000),
    "stream": (180, 60_000),
    "session": (120, 60_000),
    "consent": (30, 60_000),
    "history:anon": (60, 60_000),
    "history:user": (120, 60_000),
    "purge:anon": (10, 60_000),
    "purge:user": (5, 60_000),
    "transcript:anon": (120, 60_000),
    "transcript:user": (240, 60_000),
    "summary": (20, 60_000),
    "report:anon": (120, 60_000),
    "report:user": (240, 60_000),
    "export:anon": (30, 60_000),
    "export:user": (20, 60_000),
    "delete": (30, 60_000),
}

MAX_EVENT_PAGE = 200

# Recent transcript rows searched for a repeated interim chunk
DEDUP_WINDOW = 40

FALLBACK_SUGGESTION_TEXT = (
    "Suggestion generation is temporarily unavailable. "
    "Try rephrasing the question in one short sentence."
)

_CONSENT_DENIAL_STATUS = {
    "session_not_active": 409,
    "consent_pending": 403,
    "consent_revoked": 403,
    "consent_expired": 403,
}


def _session_mode(session: CopilotSession) -> str:
    mode = session.metadata.get("mode")
    return mode if isinstance(mode, str) else "general"


def _find_duplicate_chunk(
    recent: List[CopilotEvent],
    speaker: str,
    text: str,
    kind: str,
    interim_id: str,
) -> Optional[CopilotEvent]:
    for event in recent:
        payload = event.payload
        if (
            payload.get("speaker") == speaker
            and payload.get("text") == text
            and payload.get("transcript_kind") == kind
            and payload.get("interim_id") == interim_id
        ):
            return event
    return None


def _store_guarded(operation: str):
    """Turn store and engine failures into an opaque internal_error response."""
    def decorator(func: Callable[..., ServiceResponse]) -> Callable[..., ServiceResponse]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> ServiceResponse:
            try:
                return func(*args, **kwargs)
            except (sqlite3.Error, CopilotError):
                return internal_error(operation)
        return wrapper
    return decorator


class CopilotService:
    """Copilot session operations over the store, quota and inference collaborators."""

    def __init__(
        self,
        repository: CopilotRepository,
        quota_store: QuotaRepository,
        config: Optional[CopilotConfig] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        latency: Optional[LatencyTracker] = None,
        suggestion_client=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = config or CopilotConfig.default()
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter()
        self.latency = latency or LatencyTracker()
        self.quota_meter = QuotaMeter(quota_store)
        self.lifecycle = SessionLifecycleManager(
            repository,
            self.quota_meter,
            timeout_ms=self.config.session.heartbeat_timeout_ms,
        )
        self.sweeper = RetentionSweeper(repository)
        self._suggestion_client = suggestion_client
        self._clock = clock

    @classmethod
    def from_db_path(cls, db_path: str, config: Optional[CopilotConfig] = None, **kwargs) -> "CopilotService":
        config = config or CopilotConfig.default()
        quota_store = QuotaRepository(
            monthly_limit=config.quota.monthly_minutes,
            daily_limit=config.quota.daily_minutes,
            session_limit=config.quota.session_minutes,
            db_path=db_path,
        )
        return cls(CopilotRepository(db_path), quota_store, config=config, **kwargs)

    # Session lifecycle

    @_store_guarded("start")
    def start_session(
        self,
        user_id: Optional[str],
        body: Optional[Mapping[str, Any]],
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Admit and create a new active session with consent granted."""
        limited = self._rate_limit("start", client_key)
        if limited:
            return limited

        try:
            data = StartSessionBody.model_validate(body)
        except ValidationError as e:
            return json_error(400, "invalid_body", describe_validation_error(e))

        if not user_id:
            return json_error(401, "unauthorized")

        now = self._clock()
        snapshot = self.quota_meter.check_admission(user_id, at=now)
        if not can_admit(snapshot):
            return json_error(403, "quota_exceeded", snapshot.to_dict())

        metadata = consent.grant(refresh_heartbeat(data.metadata or {}, now), now)
        session = self.repository.insert_session(
            user_id=user_id,
            metadata=metadata,
            started_at=now,
            title=data.title,
            interview_session_id=str(data.interview_session_id) if data.interview_session_id else None,
        )
        logger.info("Copilot session %s started for user %s", session.id, user_id)

        return copilot_ok(
            {
                "session": session.to_dict(),
                "quota": {
                    "monthly_remaining": snapshot.monthly.remaining,
                    "daily_remaining": snapshot.daily.remaining,
                    "per_session_remaining": snapshot.per_session.remaining,
                },
            },
            status=201,
        )

    @_store_guarded("heartbeat")
    def heartbeat(
        self,
        user_id: Optional[str],
        session_id: str,
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Refresh liveness of an active session, expiring it if already stale."""
        limited = self._rate_limit("heartbeat", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        now = self._clock()
        outcome = self.lifecycle.heartbeat(session, now)
        if outcome.state == "expired":
            return session_expired_response(outcome.session, now)
        if outcome.state == "already_closed":
            return copilot_ok({"state": "already_closed", "status": outcome.session.status.value})
        return copilot_ok({"state": "active", "heartbeat_at": to_iso(now)})

    @_store_guarded("stop")
    def stop_session(
        self,
        user_id: Optional[str],
        body: Optional[Mapping[str, Any]],
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Stop a session, settling its billable minutes.

        A session whose heartbeat went stale is expired instead, and the
        caller is told so rather than receiving a normal stop.
        """
        limited = self._rate_limit("stop", client_key)
        if limited:
            return limited

        try:
            data = StopSessionBody.model_validate(body)
        except ValidationError as e:
            return json_error(400, "invalid_body", describe_validation_error(e))

        if not user_id:
            return json_error(401, "unauthorized")

        session, error = self._load_owned_session(user_id, str(data.session_id))
        if error:
            return error

        if session.status.is_terminal:
            return self._already_stopped(session)

        now = self._clock()
        if self.lifecycle.is_stale(session, now):
            outcome = self.lifecycle.expire(session, now)
            if outcome.state == "expired":
                return session_expired_response(outcome.session, now)
            return self._already_stopped(outcome.session)

        outcome = self.lifecycle.stop(session, now)
        if outcome.state != "stopped":
            return self._already_stopped(outcome.session)

        return copilot_ok({"session": outcome.session.to_dict(), "usage": outcome.usage.to_dict()})

    @_store_guarded("get_session")
    def get_session(
        self,
        user_id: Optional[str],
        session_id: str,
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Read one session, expiring it first if its heartbeat is stale."""
        limited = self._rate_limit("session", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        session = self.lifecycle.touch(session, self._clock())
        return copilot_ok({"session": session.to_dict()})

    # Consent

    @_store_guarded("grant_consent")
    def grant_consent(self, user_id: Optional[str], session_id: str, client_key: str = "unknown") -> ServiceResponse:
        return self._change_consent(user_id, session_id, client_key, consent.grant)

    @_store_guarded("revoke_consent")
    def revoke_consent(self, user_id: Optional[str], session_id: str, client_key: str = "unknown") -> ServiceResponse:
        return self._change_consent(user_id, session_id, client_key, consent.revoke)

    def _change_consent(self, user_id, session_id, client_key, patch) -> ServiceResponse:
        limited = self._rate_limit("consent", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        now = self._clock()
        session = self.lifecycle.touch(session, now)
        if session.status is not SessionStatus.ACTIVE:
            return json_error(409, "session_not_active")
        # A recorded revocation is final for the session.
        if patch is consent.grant and consent.get_consent_state(session).revoked_at is not None:
            return json_error(403, "consent_revoked")

        rows = self.repository.update_session_if_status(
            session.id,
            user_id,
            SessionStatus.ACTIVE,
            {"metadata": patch(session.metadata, now)},
            at=now,
        )
        if rows == 0:
            return json_error(409, "session_not_active")

        updated = self.repository.get_session(session.id) or session
        state = consent.get_consent_state(updated)
        return copilot_ok(
            {
                "session": updated.to_dict(),
                "consent": {
                    "status": state.status.value,
                    "granted_at": to_iso(state.granted_at) if state.granted_at else None,
                    "revoked_at": to_iso(state.revoked_at) if state.revoked_at else None,
                },
            }
        )

    # Events

    @_store_guarded("ingest_event")
    def ingest_event(
        self,
        user_id: Optional[str],
        session_id: str,
        body: Optional[Mapping[str, Any]],
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Accept a transcript or system event and optionally answer it.

        Content passes the consent gate and then the guardrails before it is
        stored or shown to the inference step. Consent is judged at the
        event's client timestamp, so text captured before a revocation is
        still accepted when it arrives after it.
        """
        limited = self._rate_limit("events", client_key)
        if limited:
            return limited

        try:
            data = IngestEventBody.model_validate(body)
        except ValidationError as e:
            return json_error(400, "invalid_body", describe_validation_error(e))

        if not user_id:
            return json_error(401, "unauthorized")

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        now = self._clock()
        session = self.lifecycle.touch(session, now)
        action_at = self._action_time(data.client_timestamp, now)
        decision = consent.check_ingest_consent(session, action_at)
        if not decision.allowed:
            return json_error(_CONSENT_DENIAL_STATUS.get(decision.reason, 403), decision.reason)
        if not consent.is_consent_valid_at(session, action_at):
            return json_error(403, "consent_revoked")

        cleaned = sanitize_copilot_text(data.text, self.config.guardrail.max_length)
        event, suggestion = self._ingest_text(
            session,
            EventType(data.event_type),
            data.speaker,
            cleaned,
            now,
            extra={"client_timestamp": to_iso(data.client_timestamp) if data.client_timestamp else None},
            suggest=(
                data.auto_suggest is not False
                and data.event_type == EventType.TRANSCRIPT.value
            ),
        )

        if suggestion is None:
            return copilot_ok(
                {
                    "event": event.to_dict(),
                    "suggestion": None,
                    "blocked": cleaned.has_prompt_injection,
                    "redactions": cleaned.redactions,
                },
                status=201,
            )
        return copilot_ok({"event": event.to_dict(), "suggestion": suggestion.to_dict()}, status=201)

    @_store_guarded("ingest_transcript")
    def ingest_transcript(
        self,
        user_id: Optional[str],
        session_id: str,
        body: Optional[Mapping[str, Any]],
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Accept a batch of speech-to-text chunks.

        Each chunk is consent-checked at its own client timestamp and
        sanitized on its own. Chunks that sanitize to nothing or fall after a
        revocation are rejected and counted; the rest are stored. A repeated
        interim chunk (same interim id, speaker, text and kind among the
        recent transcript rows) returns the stored event instead of a new one.
        Only final interviewer chunks are answered.
        """
        limited = self._rate_limit("transcript:anon", client_key)
        if limited:
            return limited

        try:
            data = TranscriptBody.model_validate(body)
        except ValidationError as e:
            return json_error(400, "invalid_body", describe_validation_error(e))

        if not user_id:
            return json_error(401, "unauthorized")
        limited = self._rate_limit("transcript:user", user_id)
        if limited:
            return limited

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        now = self._clock()
        if self.lifecycle.is_stale(session, now):
            outcome = self.lifecycle.expire(session, now)
            if outcome.state == "expired":
                return session_expired_response(outcome.session, now)
            session = outcome.session

        decision = consent.check_ingest_consent(session)
        if not decision.allowed and decision.reason != "consent_revoked":
            return json_error(_CONSENT_DENIAL_STATUS.get(decision.reason, 403), decision.reason)

        recent = self.repository.fetch_events(
            session.id,
            event_type=EventType.TRANSCRIPT,
            limit=DEDUP_WINDOW,
            newest_first=True,
        )
        events: List[CopilotEvent] = []
        suggestions: List[CopilotEvent] = []
        rejected = 0
        refused = 0

        for chunk in data.chunks:
            action_at = self._action_time(chunk.client_timestamp, now)
            if not consent.check_ingest_consent(session, action_at).allowed:
                refused += 1
                continue

            cleaned = sanitize_copilot_text(chunk.text, self.config.guardrail.max_length)
            if not cleaned.sanitized.strip():
                rejected += 1
                continue

            kind = "final" if chunk.is_final else "interim"
            if chunk.interim_id:
                duplicate = _find_duplicate_chunk(recent, chunk.speaker, cleaned.sanitized, kind, chunk.interim_id)
                if duplicate is not None:
                    events.append(duplicate)
                    continue

            event, suggestion = self._ingest_text(
                session,
                EventType.TRANSCRIPT,
                chunk.speaker,
                cleaned,
                self._clock(),
                extra={
                    "transcript_kind": kind,
                    "interim_id": chunk.interim_id,
                    "client_timestamp": to_iso(chunk.client_timestamp) if chunk.client_timestamp else None,
                },
                suggest=chunk.auto_suggest is not False and chunk.is_final,
            )
            events.append(event)
            recent.insert(0, event)
            if suggestion is not None:
                suggestions.append(suggestion)

        if not events:
            if refused:
                return json_error(403, "consent_revoked", {"accepted": 0, "rejected": rejected + refused})
            return json_error(400, "no_valid_chunks", {"accepted": 0, "rejected": rejected})

        return copilot_ok(
            {
                "events": [e.to_dict() for e in events],
                "suggestions": [s.to_dict() for s in suggestions],
                "accepted": len(events),
                "rejected": rejected + refused,
            },
            status=201,
        )

    def _ingest_text(
        self,
        session: CopilotSession,
        event_type: EventType,
        speaker: str,
        cleaned: SanitizedText,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None,
        suggest: bool = True,
    ) -> Tuple[CopilotEvent, Optional[CopilotEvent]]:
        """Store one sanitized text and, for an interviewer question, its suggestion."""
        request_id = str(uuid.uuid4())
        mode = _session_mode(session)
        with self.latency.track(request_id, session.id):
            with self.latency.stage(request_id, "transcript_parse"):
                payload = {
                    "speaker": speaker,
                    "text": cleaned.sanitized,
                    "mode": mode,
                    **(extra or {}),
                    "security": {
                        "redactions": cleaned.redactions,
                        "prompt_injection": cleaned.has_prompt_injection,
                    },
                }

            with self.latency.stage(request_id, "ingest"):
                event = self.repository.insert_event(session.id, session.user_id, event_type, payload, now)

            if not (suggest and speaker == "interviewer" and not cleaned.has_prompt_injection):
                return event, None

            with self.latency.stage(request_id, "context_retrieval"):
                recent = self.repository.fetch_events(
                    session.id,
                    event_type=EventType.TRANSCRIPT,
                    limit=self.config.suggestion.context_events,
                    newest_first=True,
                )
                transcript_text = build_transcript_text(reversed(recent))

            suggestion_payload = self._generate_suggestion(
                request_id,
                mode,
                transcript_text or f"{speaker}: {cleaned.sanitized}",
                cleaned.sanitized,
                event.id,
            )

            with self.latency.stage(request_id, "suggestion_persist"):
                timings = self.latency.get_timings(request_id)
                if timings is not None:
                    suggestion_payload.update(timings_to_metadata(timings))
                suggestion = self.repository.insert_event(
                    session.id, session.user_id, EventType.SUGGESTION, suggestion_payload, self._clock()
                )

            timings = self.latency.get_timings(request_id)
            if timings is not None:
                log_latency_metrics(timings, {"mode": mode})
        return event, suggestion

    def _generate_suggestion(
        self,
        request_id: str,
        mode: str,
        transcript_text: str,
        latest_question: str,
        based_on_event_id: str,
    ) -> Dict[str, Any]:
        """Ask the inference step for a suggestion; degrade to a system notice on failure."""
        self.latency.start_stage(request_id, "llm_inference")
        try:
            parsed = self._get_suggestion_client().suggest(mode, transcript_text, latest_question)
        except Exception:
            logger.warning("Copilot suggestion generation failed for request %s", request_id, exc_info=True)
            return {
                "category": "system",
                "text": FALLBACK_SUGGESTION_TEXT,
                "based_on_event_id": based_on_event_id,
                "mode": mode,
                "error": "llm_unavailable",
            }
        self.latency.end_stage(request_id, "llm_inference")

        payload: Dict[str, Any] = {
            "category": "answer",
            "text": parsed.short_answer,
            "based_on_event_id": based_on_event_id,
            "mode": mode,
        }
        payload.update({k: v for k, v in parsed.structured.items() if k != "short_answer"})
        return payload

    def _get_suggestion_client(self):
        if self._suggestion_client is None:
            from copilot_guard.sdk.openai_client import SuggestionClient

            self._suggestion_client = SuggestionClient(
                model=self.config.suggestion.model,
                temperature=self.config.suggestion.temperature,
            )
        return self._suggestion_client

    @_store_guarded("list_events")
    def list_events(
        self,
        user_id: Optional[str],
        session_id: str,
        cursor: Optional[str] = None,
        limit: int = 100,
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Return the next page of a session's events after `cursor`.

        Clients resume with the returned `next_cursor`; pages neither repeat
        nor skip rows.
        """
        limited = self._rate_limit("stream", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")

        parsed_cursor = parse_event_cursor(cursor)
        if cursor and parsed_cursor is None:
            return json_error(400, "invalid_cursor")

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error
        session = self.lifecycle.touch(session, self._clock())

        limit = max(1, min(MAX_EVENT_PAGE, limit))
        after = (parsed_cursor.created_at, parsed_cursor.id) if parsed_cursor else None
        rows = self.repository.fetch_events(session.id, after=after, limit=limit)
        rows = filter_events_after_cursor(rows, parsed_cursor)

        next_cursor = cursor_for_event(rows[-1]) if rows else cursor
        return copilot_ok(
            {
                "events": [row.to_dict() for row in rows],
                "next_cursor": next_cursor,
                "session_status": session.status.value,
            }
        )


    # Summaries and reports

    @_store_guarded("summarize")
    def summarize_session(
        self,
        user_id: Optional[str],
        session_id: str,
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Summarize a session into a coaching report and store it.

        The stored events are re-sanitized before the inference step sees
        them. An inference failure stores a neutral fallback report instead
        of failing the request.
        """
        limited = self._rate_limit("summary", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        events = self.repository.fetch_events(session.id, limit=MAX_SUMMARY_EVENTS)
        if not events:
            return json_error(400, "no_events", {"message": "No session events to summarize"})

        mode = _session_mode(session)
        session_log = compact_session_log(events)
        try:
            result = self._get_suggestion_client().summarize(mode, session_log)
        except Exception:
            logger.warning("Copilot summary generation failed for session %s", session.id, exc_info=True)
            result = fallback_summary(mode)

        summary = self.repository.upsert_summary(
            session.id, user_id, SUMMARY_TYPE, result.content, result.payload, at=self._clock()
        )
        return copilot_ok({"summary": summary.to_dict()})

    @_store_guarded("report")
    def get_report(
        self,
        user_id: Optional[str],
        session_id: str,
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Return the normalized mock interview report of a session."""
        limited = self._rate_limit("report:anon", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")
        limited = self._rate_limit("report:user", user_id)
        if limited:
            return limited

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        summaries = self.repository.list_summaries(
            user_id,
            session_id=session.id,
            summary_types=REPORT_SUMMARY_TYPES,
            newest_first=True,
            limit=5,
        )
        source = find_report_source(summaries)
        if source is None:
            return json_error(404, "report_not_found")

        return copilot_ok(
            {
                "report": report_from_summary(source, _session_mode(session)),
                "summary": source.to_dict(),
            }
        )

    # History and deletion

    @_store_guarded("history")
    def list_history(
        self,
        user_id: Optional[str],
        query: Optional[Mapping[str, Any]] = None,
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """List a user's sessions with paging, filters and a usage total."""
        limited = self._rate_limit("history:anon", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")
        limited = self._rate_limit("history:user", user_id)
        if limited:
            return limited

        filters = parse_history_filters(query or {})
        if (filters.date_from and not is_iso_date(filters.date_from)) or (
            filters.date_to and not is_iso_date(filters.date_to)
        ):
            return json_error(400, "invalid_date_filter")

        session_query = SessionQuery(
            status=filters.status,
            mode=filters.mode,
            created_from=parse_iso(filters.date_from),
            created_to=parse_iso(filters.date_to),
        )
        sessions, total = self.repository.list_sessions(
            user_id, session_query, offset=filters.offset, limit=filters.page_size
        )
        usage = compute_usage_aggregate(self.repository.list_session_usage(user_id, session_query))

        return copilot_ok(
            {
                "sessions": [s.to_dict() for s in sessions],
                "pagination": {
                    "page": filters.page,
                    "page_size": filters.page_size,
                    "total": total,
                },
                "usage": {
                    "total_duration_seconds": usage.total_duration_seconds,
                    "total_consumed_minutes": usage.total_consumed_minutes,
                },
            }
        )

    @_store_guarded("purge")
    def purge_all(
        self,
        user_id: Optional[str],
        body: Optional[Mapping[str, Any]],
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Delete every copilot event, summary and session of a user.

        Refused while any of the user's sessions is still live. The deletes
        themselves only match stopped or expired sessions and their rows, so a
        session started after the liveness check survives the purge.
        """
        limited = self._rate_limit("purge:anon", client_key)
        if limited:
            return limited

        try:
            data = PurgeBody.model_validate(body)
        except ValidationError:
            return json_error(400, "invalid_confirmation")
        if not data.confirmed:
            return json_error(400, "invalid_confirmation")

        if not user_id:
            return json_error(401, "unauthorized")
        limited = self._rate_limit("purge:user", user_id)
        if limited:
            return limited

        now = self._clock()
        for active in self.repository.list_active_sessions(user_id):
            self.lifecycle.touch(active, now)

        active_count = self.repository.count_rows(
            "sessions", DeleteFilter(user_id=user_id, statuses=(SessionStatus.ACTIVE,))
        )
        if active_count > 0:
            return json_error(
                409,
                "session_active",
                {"message": "Stop active sessions before deleting all copilot data."},
            )

        scopes = {
            "events": DeleteFilter(user_id=user_id, session_statuses=TERMINAL_STATUSES),
            "summaries": DeleteFilter(user_id=user_id, session_statuses=TERMINAL_STATUSES),
            "sessions": DeleteFilter(user_id=user_id, statuses=TERMINAL_STATUSES),
        }
        deleted = {}
        for entity, scope in scopes.items():
            result = self.repository.bulk_delete(entity, scope)
            if result.error:
                raise CopilotError("purge_failed", f"Deleting {entity} failed: {result.error}")
            deleted[entity] = result.count

        logger.info("Purged copilot data for user %s: %s", user_id, deleted)
        return copilot_ok({"deleted": deleted})

    @_store_guarded("delete_session")
    def delete_session(
        self,
        user_id: Optional[str],
        session_id: str,
        client_key: str = "unknown",
    ) -> ServiceResponse:
        """Delete one of the caller's sessions with its events and summaries.

        Only stopped or expired sessions can be deleted; a live session is
        refused with 409 session_active.
        """
        limited = self._rate_limit("delete", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")

        session, error = self._load_owned_session(user_id, session_id)
        if error:
            return error

        session = self.lifecycle.touch(session, self._clock())
        if session.status is SessionStatus.ACTIVE:
            return json_error(409, "session_active", {"message": "Stop the session before deleting it."})

        if self.repository.delete_session_if_terminal(session.id, user_id) == 0:
            return json_error(409, "session_active", {"message": "Stop the session before deleting it."})

        logger.info("Deleted copilot session %s for user %s", session.id, user_id)
        return copilot_ok({"deleted": {"session_id": session.id}})

    @_store_guarded("export")
    def export_data(self, user_id: Optional[str], client_key: str = "unknown") -> ServiceResponse:
        """Export every copilot session, event and summary of the caller."""
        limited = self._rate_limit("export:anon", client_key)
        if limited:
            return limited
        if not user_id:
            return json_error(401, "unauthorized")
        limited = self._rate_limit("export:user", user_id)
        if limited:
            return limited

        now = self._clock()
        return copilot_ok(
            {
                "exported_at": to_iso(now),
                "user_id": user_id,
                "filename": f"copilot-data-export-{now.date().isoformat()}.json",
                "sessions": [s.to_dict() for s in self.repository.list_user_sessions(user_id)],
                "events": [e.to_dict() for e in self.repository.list_user_events(user_id)],
                "summaries": [s.to_dict() for s in self.repository.list_summaries(user_id)],
            }
        )

    @_store_guarded("retention_sweep")
    def run_retention_sweep(
        self,
        dry_run: bool = True,
        overrides: Optional[Mapping[str, Optional[int]]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResponse:
        """Run a retention sweep; a dry run unless dry_run=False is passed."""
        try:
            policy = resolve_retention_policy(overrides, self.config.retention)
        except ValueError as e:
            return json_error(400, "invalid_body", {"message": str(e)})

        now = now or self._clock()
        result = self.sweeper.sweep(now=now, policy=policy, dry_run=dry_run)
        payload = result.to_dict()
        payload["executed_at"] = to_iso(now)
        if result.dry_run:
            payload["message"] = "Dry-run completed. No data was deleted."
        else:
            payload["message"] = (
                f"Retention sweep completed: {result.deleted['events']} events, "
                f"{result.deleted['summaries']} summaries, "
                f"{result.deleted['sessions']} sessions deleted."
            )
        return copilot_ok(payload)

    # Helpers

    def _rate_limit(self, rule: str, key: str) -> Optional[ServiceResponse]:
        limit, window_ms = RATE_LIMITS[rule]
        result = self.rate_limiter.check(f"copilot:{rule}:{key}", limit, window_ms)
        if result.ok:
            return None
        return rate_limited(result.retry_after_ms)

    def _action_time(self, client_timestamp: Optional[datetime], now: datetime) -> datetime:
        """Instant an ingested text is judged at for consent.

        A client timestamp is trusted only inside the liveness window ending
        at `now`; one in the future or older than the window is replaced by
        `now`.
        """
        if client_timestamp is None:
            return now
        captured = as_utc(client_timestamp)
        window = timedelta(milliseconds=self.config.session.heartbeat_timeout_ms)
        if captured > now or now - captured > window:
            return now
        return captured

    def _load_owned_session(
        self, user_id: str, session_id: str
    ) -> Tuple[Optional[CopilotSession], Optional[ServiceResponse]]:
        session = self.repository.get_session(session_id)
        if session is None:
            return None, json_error(404, "session_not_found")
        if session.user_id != user_id:
            return None, json_error(403, "forbidden")
        return session, None

    @staticmethod
    def _already_stopped(session: CopilotSession) -> ServiceResponse:
        return copilot_ok(
            {
                "session": session.to_dict(),
                "usage": {
                    "elapsed_seconds": session.duration_seconds,
                    "billed_minutes": session.consumed_minutes,
                    "already_stopped": True,
                },
            }
        )
