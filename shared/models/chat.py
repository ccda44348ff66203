"""
Pydantic models for chat sessions.

A session is one uniquely identified conversation thread: an append-only list
of messages plus the set of document references the user attached to it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dedupe_refs(refs: Iterable[str]) -> List[str]:
    """Drop repeated document references, keeping first-seen order."""
    return list(dict.fromkeys(refs))


class MessageRole(str, Enum):
    """Who authored a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """A single message in a conversation."""

    role: MessageRole
    content: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("content")
    @classmethod
    def validate_content_not_blank(cls, v: str) -> str:
        """Messages must carry text."""
        if not v.strip():
            raise ValueError("Message content cannot be empty or whitespace-only")
        return v

    def to_prompt(self) -> Dict[str, str]:
        """Reduce to the {role, content} shape the completion API expects."""
        return {"role": self.role.value, "content": self.content}


class SessionSummary(BaseModel):
    """Row returned when listing sessions."""

    session_id: str
    owner_id: Optional[str] = None
    last_activity: datetime
    message_count: int = Field(..., ge=0)
    document_refs: List[str] = Field(default_factory=list)


class SessionStats(BaseModel):
    """Counters and timestamps for one session."""

    session_id: str
    message_count: int = Field(..., ge=0)
    document_count: int = Field(..., ge=0)
    last_activity: datetime
    created_at: datetime
    updated_at: datetime


class Session(BaseModel):
    """
    A conversation session with message history.

    ``version`` is bumped by the store on every write and lets a full-session
    save detect that somebody else wrote in between.
    """

    session_id: str = Field(..., min_length=1)
    messages: List[Message] = Field(default_factory=list)
    document_refs: List[str] = Field(default_factory=list)
    owner_id: Optional[str] = None
    last_activity: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0)

    @field_validator("document_refs")
    @classmethod
    def validate_unique_refs(cls, v: List[str]) -> List[str]:
        return dedupe_refs(v)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def add_message(self, role: MessageRole, content: str) -> Message:
        """Append a message and mark the session active."""
        msg = Message(role=role, content=content)
        self.messages.append(msg)
        self.last_activity = msg.timestamp
        return msg

    def merge_document_refs(self, refs: Optional[Iterable[str]]) -> List[str]:
        """
        Union ``refs`` into the session's references.

        Returns:
            The references that were not already present
        """
        added = [ref for ref in dedupe_refs(refs or []) if ref not in self.document_refs]
        self.document_refs.extend(added)
        return added

    def summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            owner_id=self.owner_id,
            last_activity=self.last_activity,
            message_count=self.message_count,
            document_refs=list(self.document_refs),
        )

    def stats(self) -> SessionStats:
        return SessionStats(
            session_id=self.session_id,
            message_count=self.message_count,
            document_count=len(self.document_refs),
            last_activity=self.last_activity,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class TurnResult(BaseModel):
    """Outcome of one user-message / assistant-reply cycle."""

    reply_text: str
    session_id: str
    message_count: int = Field(..., ge=0)


# =============================================================================
# Request / response bodies
# =============================================================================


class SendMessageRequest(BaseModel):
    """Body of POST /api/v1/chat/message."""

    message: str = Field(..., min_length=1, description="The user's message")
    session_id: str = Field(..., min_length=1, description="Caller-chosen conversation id")
    document_refs: Optional[List[str]] = Field(
        None, description="Document names to attach to the conversation"
    )
    owner_id: Optional[str] = Field(None, description="Opaque id of the current user")

    class Config:
        json_schema_extra = {
            "example": {
                "message": "Summarise the second chapter for me",
                "session_id": "chat-2026-10-18-01",
                "document_refs": ["syllabus.pdf", "chapter2.pdf"],
            }
        }


class CreateSessionRequest(BaseModel):
    """Body of POST /api/v1/chat/create."""

    session_id: str = Field(..., min_length=1)
    document_refs: Optional[List[str]] = None
    owner_id: Optional[str] = None


class StreamRequest(BaseModel):
    """Body of POST /api/v1/chat/stream."""

    prompt: str = Field(..., min_length=1)


class SessionActionResponse(BaseModel):
    """Confirmation for delete and clear."""

    message: str
    session_id: str
    deleted: Optional[bool] = None
    cleared: Optional[bool] = None


class HealthResponse(BaseModel):
    """Health check response for monitoring."""

    status: str = Field(default="healthy", description="Service status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Application version")
    timestamp: datetime = Field(default_factory=utcnow)
    dependencies: Dict[str, bool] = Field(
        default_factory=dict, description="Status of external dependencies"
    )
