"""Shared models package."""

from shared.models.chat import (
    CreateSessionRequest,
    HealthResponse,
    Message,
    MessageRole,
    SendMessageRequest,
    Session,
    SessionActionResponse,
    SessionStats,
    SessionSummary,
    StreamRequest,
    TurnResult,
    dedupe_refs,
    utcnow,
)

__all__ = [
    "Message",
    "MessageRole",
    "Session",
    "SessionSummary",
    "SessionStats",
    "TurnResult",
    "SendMessageRequest",
    "CreateSessionRequest",
    "StreamRequest",
    "SessionActionResponse",
    "HealthResponse",
    "dedupe_refs",
    "utcnow",
]
