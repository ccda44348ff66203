"""
Conversation session management for multi-turn dialogue.

Owns the turn protocol: load or create the session, append the user message,
assemble context, call the completion provider, append the reply and persist
both messages in one write (an insert for a new session, a version-checked
save otherwise). Turns against the same session id are serialized
in-process; the version check covers writers in other processes.
"""

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict, Iterable, List, Optional

from shared.models import Message, MessageRole, Session, SessionStats, SessionSummary, TurnResult
from shared.utils import (
    ChatError,
    InvalidInputError,
    LoggerAdapter,
    SessionConflictError,
    SessionNotFoundError,
    get_logger,
)

from ..llm import CompletionProvider
from .context import assemble_context
from .store import SessionStore

logger = get_logger(__name__)


class TurnState(str, Enum):
    """Steps of a single turn. FAILED is reachable from every step."""

    LOADING = "loading"
    CREATING = "creating"
    APPENDING_USER = "appending_user"
    ASSEMBLING_CONTEXT = "assembling_context"
    INVOKING_PROVIDER = "invoking_provider"
    APPENDING_ASSISTANT = "appending_assistant"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class KeyedLock:
    """
    One asyncio.Lock per key, handed out first-come-first-served.

    A key's lock is dropped as soon as nobody holds or waits for it, so the
    registry only grows with the number of sessions currently in flight.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Counter = Counter()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


def _require_text(value: Optional[str], what: str) -> str:
    if value is None or not value.strip():
        raise InvalidInputError(f"{what} cannot be empty")
    return value


class SessionManager:
    """
    Orchestrates chat turns and session lifecycle on top of a SessionStore.

    The manager keeps no session objects between calls: every operation
    re-reads the store, works on a private copy and writes it back.
    """

    def __init__(
        self,
        store: SessionStore,
        provider: CompletionProvider,
        provider_timeout: Optional[float] = None,
        max_save_retries: int = 3,
    ):
        """
        Initialize the session manager.

        Args:
            store: Session persistence backend
            provider: Completion provider adapter
            provider_timeout: Default deadline for the provider call, in seconds
            max_save_retries: How often a turn's writes are replayed onto a
                fresh copy after a version conflict
        """
        self.store = store
        self.provider = provider
        self.provider_timeout = provider_timeout
        self.max_save_retries = max_save_retries
        self._locks = KeyedLock()
        logger.info("SessionManager initialized")

    # ------------------------------------------------------------------
    # Turn protocol
    # ------------------------------------------------------------------

    async def send_message(
        self,
        session_id: str,
        text: str,
        document_refs: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TurnResult:
        """
        Process one user message and return the assistant's reply.

        Creates the session when it does not exist yet. On any failure nothing
        is persisted and the caller has to resubmit the message.

        Args:
            session_id: Caller-supplied conversation id
            text: User message
            document_refs: Document names to merge into the session
            owner_id: Opaque user id, only recorded on creation
            timeout: Provider deadline, defaults to the manager's setting

        Returns:
            TurnResult with the reply and the new message count

        Raises:
            InvalidInputError: Blank session id or message
            ProviderError: Completion failed or timed out
            StoreError: Persistence backend failed
            SessionConflictError: Concurrent writers could not be reconciled
        """
        _require_text(session_id, "Session ID")
        _require_text(text, "Message")
        refs = list(document_refs or [])

        async with self._locks.hold(session_id):
            return await self._run_turn(session_id, text, refs, owner_id, timeout)

    async def _run_turn(
        self,
        session_id: str,
        text: str,
        document_refs: List[str],
        owner_id: Optional[str],
        timeout: Optional[float],
    ) -> TurnResult:
        turn_logger = LoggerAdapter(logger, {"session_id": session_id})
        state = TurnState.LOADING

        try:
            session = self.store.get(session_id)
            is_new = session is None
            if session is None:
                state = TurnState.CREATING
                session = Session(
                    session_id=session_id,
                    document_refs=document_refs,
                    owner_id=owner_id,
                )
                turn_logger.debug("Starting new session")
            elif document_refs:
                added = session.merge_document_refs(document_refs)
                if added:
                    turn_logger.debug(f"Merged {len(added)} new document references")
            expected_version = session.version

            state = TurnState.APPENDING_USER
            user_message = session.add_message(MessageRole.USER, text)

            state = TurnState.ASSEMBLING_CONTEXT
            context = assemble_context(session.messages, session.document_refs)

            state = TurnState.INVOKING_PROVIDER
            turn_logger.debug(f"Invoking provider with {len(context.messages)} messages")
            completion = await self.provider.complete(
                context.messages,
                timeout=timeout if timeout is not None else self.provider_timeout,
            )

            state = TurnState.APPENDING_ASSISTANT
            assistant_message = session.add_message(MessageRole.ASSISTANT, completion.text)

            state = TurnState.PERSISTING
            session = self._persist(
                session,
                expected_version,
                is_new,
                [user_message, assistant_message],
            )
            state = TurnState.DONE

        except ChatError as e:
            e.state = e.state or state.value
            e.session_id = e.session_id or session_id
            turn_logger.debug(f"Turn moved from {state.value} to {TurnState.FAILED.value}")
            turn_logger.error(
                f"Error processing message for chat {session_id}: {e}",
                extra={"turn_state": state.value, "error_type": type(e).__name__},
            )
            raise
        except Exception as e:
            turn_logger.error(
                f"Unexpected failure processing message for chat {session_id}: {e}",
                exc_info=True,
                extra={"turn_state": state.value},
            )
            raise

        turn_logger.info(
            f"Processed message for chat {session_id}",
            extra={"message_count": session.message_count, "model": completion.model},
        )
        return TurnResult(
            reply_text=completion.text,
            session_id=session.session_id,
            message_count=session.message_count,
        )

    def _persist(
        self,
        session: Session,
        expected_version: int,
        is_new: bool,
        pending: List[Message],
    ) -> Session:
        """
        Commit the working copy, replaying ``pending`` after a lost race.

        When another writer got in first, the turn's messages and document refs
        are re-applied to a freshly loaded copy instead of overwriting the
        other writer's changes.
        """
        attempts = 0
        while True:
            try:
                if is_new:
                    session.version = self.store.insert(session)
                else:
                    session.version = self.store.save(session, expected_version)
                return session
            except (SessionConflictError, SessionNotFoundError) as e:
                if attempts >= self.max_save_retries:
                    raise SessionConflictError(
                        f"Could not persist turn for chat {session.session_id} "
                        f"after {attempts + 1} attempts",
                        session_id=session.session_id,
                    ) from e
                attempts += 1
                logger.warning(
                    f"Write race on chat {session.session_id}, replaying turn "
                    f"(attempt {attempts}/{self.max_save_retries})"
                )

            fresh = self.store.get(session.session_id)
            is_new = fresh is None
            if fresh is None:
                fresh = Session(session_id=session.session_id, owner_id=session.owner_id)
            fresh.merge_document_refs(session.document_refs)
            fresh.messages.extend(pending)
            fresh.last_activity = pending[-1].timestamp
            expected_version = fresh.version
            session = fresh

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_reply(self, prompt: str) -> AsyncIterator[str]:
        """
        Open a one-off streamed reply without touching any session.

        Validation and the upstream request both happen before this returns,
        so InvalidInputError and ProviderError reach the caller before any
        fragment is sent on.
        """
        _require_text(prompt, "Prompt")
        return await self.provider.open_stream(prompt)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        session_id: str,
        document_refs: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
    ) -> Session:
        """Create an empty session. Raises SessionConflictError if it exists."""
        _require_text(session_id, "Session ID")
        async with self._locks.hold(session_id):
            return self.store.create(session_id, document_refs, owner_id)

    async def get_history(self, session_id: str) -> Session:
        """Full session including all messages."""
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"No chat found with ID: {session_id}", session_id=session_id)
        return session

    async def get_stats(self, session_id: str) -> SessionStats:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"No chat found with ID: {session_id}", session_id=session_id)
        return session.stats()

    async def list_sessions(self, owner_id: Optional[str] = None) -> List[SessionSummary]:
        return self.store.list(owner_id)

    async def delete_session(self, session_id: str) -> bool:
        async with self._locks.hold(session_id):
            deleted = self.store.delete(session_id)
        if deleted:
            logger.info(f"Deleted chat {session_id}")
        return deleted

    async def clear_history(self, session_id: str) -> bool:
        async with self._locks.hold(session_id):
            cleared = self.store.clear(session_id)
        if cleared:
            logger.info(f"Cleared chat history for {session_id}")
        return cleared
