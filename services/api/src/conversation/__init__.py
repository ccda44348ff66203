"""Conversation management module."""

from .context import ContextWindow, MAX_WINDOW_MESSAGES, assemble_context
from .session_manager import KeyedLock, SessionManager, TurnState
from .store import InMemorySessionStore, MongoSessionStore, SessionStore, build_session_store

__all__ = [
    "SessionManager",
    "TurnState",
    "KeyedLock",
    "SessionStore",
    "InMemorySessionStore",
    "MongoSessionStore",
    "build_session_store",
    "ContextWindow",
    "MAX_WINDOW_MESSAGES",
    "assemble_context",
]
