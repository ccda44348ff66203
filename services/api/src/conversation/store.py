"""
Durable keyed storage for chat sessions.

Exactly one record per session id. Every mutating call bumps the record's
``version`` and ``updated_at``; ``save`` only writes when the caller's
expected version still matches, so a full-session write can never silently
replace messages appended by somebody else.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.models import Message, Session, SessionSummary, dedupe_refs, utcnow
from shared.utils import (
    SessionConflictError,
    SessionNotFoundError,
    Settings,
    StoreError,
    VersionConflictError,
    get_logger,
)

logger = get_logger(__name__)


class SessionStore(ABC):
    """Interface shared by all session backends."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        """Return the session, or None when it does not exist."""

    @abstractmethod
    def create(
        self,
        session_id: str,
        document_refs: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
    ) -> Session:
        """Create an empty session. Raises SessionConflictError if the id is taken."""

    @abstractmethod
    def insert(self, session: Session) -> int:
        """
        Store a complete new session in one write and return its version.

        Messages, document refs and owner are written together, so a failure
        leaves no record behind.

        Raises:
            SessionConflictError: If the id is already taken
        """

    @abstractmethod
    def append(self, session_id: str, message: Message) -> Session:
        """Atomically append one message. Raises SessionNotFoundError if absent."""

    @abstractmethod
    def merge_document_refs(self, session_id: str, refs: Iterable[str]) -> Session:
        """Union ``refs`` into the session's references."""

    @abstractmethod
    def clear(self, session_id: str) -> bool:
        """Drop all messages but keep the session. False if absent."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """Remove the session entirely. False if absent."""

    @abstractmethod
    def list(self, owner_id: Optional[str] = None) -> List[SessionSummary]:
        """Summaries ordered by last activity, newest first."""

    @abstractmethod
    def save(self, session: Session, expected_version: int) -> int:
        """
        Write messages, document refs and last activity of ``session``.

        Args:
            session: Working copy holding the new state
            expected_version: Version the working copy was loaded at

        Returns:
            The new stored version

        Raises:
            VersionConflictError: If the stored version is no longer ``expected_version``
            SessionNotFoundError: If the session was deleted meanwhile
        """

    def ping(self) -> bool:
        return True


class InMemorySessionStore(SessionStore):
    """
    Process-local store backed by a dict.

    Callers always receive deep copies, so mutating a returned session never
    changes stored state.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.RLock()
        logger.info("InMemorySessionStore initialized")

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(
                f"No chat found with ID: {session_id}", session_id=session_id
            )
        return session

    @staticmethod
    def _touch(session: Session) -> None:
        session.updated_at = utcnow()
        session.version += 1

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def create(
        self,
        session_id: str,
        document_refs: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
    ) -> Session:
        session = Session(session_id=session_id, document_refs=document_refs or [], owner_id=owner_id)
        with self._lock:
            self.insert(session)
            return self._sessions[session_id].model_copy(deep=True)

    def insert(self, session: Session) -> int:
        with self._lock:
            if session.session_id in self._sessions:
                raise SessionConflictError(
                    f"Chat {session.session_id} already exists", session_id=session.session_id
                )
            now = utcnow()
            stored = session.model_copy(deep=True)
            stored.document_refs = dedupe_refs(stored.document_refs)
            stored.created_at = now
            stored.updated_at = now
            if not stored.messages:
                stored.last_activity = now
            stored.version = 1
            self._sessions[stored.session_id] = stored
            logger.info(f"Created session {stored.session_id}")
            return stored.version

    def append(self, session_id: str, message: Message) -> Session:
        with self._lock:
            session = self._require(session_id)
            session.messages.append(message.model_copy())
            session.last_activity = message.timestamp
            self._touch(session)
            return session.model_copy(deep=True)

    def merge_document_refs(self, session_id: str, refs: Iterable[str]) -> Session:
        with self._lock:
            session = self._require(session_id)
            if session.merge_document_refs(refs):
                self._touch(session)
            return session.model_copy(deep=True)

    def clear(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.messages = []
            session.last_activity = utcnow()
            self._touch(session)
            logger.info(f"Cleared session {session_id}")
            return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                return False
            logger.info(f"Deleted session {session_id}")
            return True

    def list(self, owner_id: Optional[str] = None) -> List[SessionSummary]:
        with self._lock:
            sessions = [
                s for s in self._sessions.values()
                if owner_id is None or s.owner_id == owner_id
            ]
            sessions.sort(key=lambda s: s.last_activity, reverse=True)
            return [s.summary() for s in sessions]

    def save(self, session: Session, expected_version: int) -> int:
        with self._lock:
            current = self._require(session.session_id)
            if current.version != expected_version:
                raise VersionConflictError(
                    f"Chat {session.session_id} changed since it was loaded",
                    session_id=session.session_id,
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            current.messages = [m.model_copy() for m in session.messages]
            current.document_refs = dedupe_refs(session.document_refs)
            current.last_activity = session.last_activity
            self._touch(current)
            return current.version

    def __len__(self) -> int:
        return len(self._sessions)


@contextmanager
def _store_errors(operation: str, session_id: Optional[str] = None) -> Iterator[None]:
    """Re-raise driver failures as StoreError."""
    try:
        yield
    except PyMongoError as e:
        logger.error(f"MongoDB {operation} failed: {e}", extra={"session_id": session_id})
        raise StoreError(f"Failed to {operation}: {e}", session_id=session_id) from e


class MongoSessionStore(SessionStore):
    """
    MongoDB-backed store, one document per session keyed by ``_id``.

    Single-field changes (append, merge, clear) use atomic update operators;
    ``save`` is a conditional update on ``version``.
    """

    def __init__(self, collection: Collection):
        self.collection = collection
        self.ensure_indexes()
        logger.info(f"MongoSessionStore initialized on collection '{collection.name}'")

    @classmethod
    def from_uri(
        cls,
        mongo_uri: str,
        db_name: str,
        collection_name: str = "chat_sessions",
    ) -> "MongoSessionStore":
        client: MongoClient = MongoClient(
            mongo_uri,
            tz_aware=True,
            serverSelectionTimeoutMS=30000,
            connectTimeoutMS=20000,
            socketTimeoutMS=20000,
        )
        return cls(client[db_name][collection_name])

    def ensure_indexes(self) -> None:
        with _store_errors("create indexes"):
            self.collection.create_index([("last_activity", DESCENDING)])
            self.collection.create_index(
                [("owner_id", ASCENDING), ("last_activity", DESCENDING)]
            )

    # ------------------------------------------------------------------
    # Document mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _message_doc(message: Message) -> Dict[str, Any]:
        return {
            "role": message.role.value,
            "content": message.content,
            "timestamp": message.timestamp,
        }

    @staticmethod
    def _to_session(doc: Dict[str, Any]) -> Session:
        return Session(
            session_id=doc["_id"],
            messages=[Message(**m) for m in doc.get("messages", [])],
            document_refs=doc.get("document_refs", []),
            owner_id=doc.get("owner_id"),
            last_activity=doc["last_activity"],
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
            version=doc.get("version", 0),
        )

    def _not_found(self, session_id: str) -> SessionNotFoundError:
        return SessionNotFoundError(f"No chat found with ID: {session_id}", session_id=session_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        with _store_errors("fetch chat history", session_id):
            doc = self.collection.find_one({"_id": session_id})
        return self._to_session(doc) if doc else None

    def create(
        self,
        session_id: str,
        document_refs: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
    ) -> Session:
        session = Session(session_id=session_id, document_refs=document_refs or [], owner_id=owner_id)
        return self._to_session(self._insert_doc(session))

    def insert(self, session: Session) -> int:
        return self._insert_doc(session)["version"]

    def _insert_doc(self, session: Session) -> Dict[str, Any]:
        now = utcnow()
        doc = {
            "_id": session.session_id,
            "messages": [self._message_doc(m) for m in session.messages],
            "document_refs": dedupe_refs(session.document_refs),
            "owner_id": session.owner_id,
            "last_activity": session.last_activity if session.messages else now,
            "created_at": now,
            "updated_at": now,
            "version": 1,
        }
        with _store_errors("create chat", session.session_id):
            try:
                self.collection.insert_one(doc)
            except DuplicateKeyError as e:
                raise SessionConflictError(
                    f"Chat {session.session_id} already exists", session_id=session.session_id
                ) from e
        logger.info(f"Created session {session.session_id}")
        return doc

    def _update(self, session_id: str, update: Dict[str, Any], operation: str) -> Session:
        now = utcnow()
        update.setdefault("$set", {})["updated_at"] = now
        update["$inc"] = {"version": 1}
        with _store_errors(operation, session_id):
            doc = self.collection.find_one_and_update(
                {"_id": session_id},
                update,
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise self._not_found(session_id)
        return self._to_session(doc)

    def append(self, session_id: str, message: Message) -> Session:
        return self._update(
            session_id,
            {
                "$push": {"messages": self._message_doc(message)},
                "$set": {"last_activity": message.timestamp},
            },
            "append message",
        )

    def merge_document_refs(self, session_id: str, refs: Iterable[str]) -> Session:
        return self._update(
            session_id,
            {"$addToSet": {"document_refs": {"$each": dedupe_refs(refs)}}},
            "merge document references",
        )

    def clear(self, session_id: str) -> bool:
        now = utcnow()
        with _store_errors("clear chat history", session_id):
            result = self.collection.update_one(
                {"_id": session_id},
                {
                    "$set": {"messages": [], "last_activity": now, "updated_at": now},
                    "$inc": {"version": 1},
                },
            )
        return result.matched_count > 0

    def delete(self, session_id: str) -> bool:
        with _store_errors("delete chat", session_id):
            result = self.collection.delete_one({"_id": session_id})
        return result.deleted_count > 0

    def list(self, owner_id: Optional[str] = None) -> List[SessionSummary]:
        pipeline: List[Dict[str, Any]] = []
        if owner_id is not None:
            pipeline.append({"$match": {"owner_id": owner_id}})
        pipeline.extend([
            {"$sort": {"last_activity": -1}},
            {
                "$project": {
                    "owner_id": 1,
                    "last_activity": 1,
                    "document_refs": 1,
                    "message_count": {"$size": "$messages"},
                }
            },
        ])
        with _store_errors("fetch chats"):
            docs = list(self.collection.aggregate(pipeline))
        return [
            SessionSummary(
                session_id=doc["_id"],
                owner_id=doc.get("owner_id"),
                last_activity=doc["last_activity"],
                message_count=doc["message_count"],
                document_refs=doc.get("document_refs", []),
            )
            for doc in docs
        ]

    def save(self, session: Session, expected_version: int) -> int:
        session_id = session.session_id
        with _store_errors("save chat", session_id):
            result = self.collection.update_one(
                {"_id": session_id, "version": expected_version},
                {
                    "$set": {
                        "messages": [self._message_doc(m) for m in session.messages],
                        "document_refs": dedupe_refs(session.document_refs),
                        "last_activity": session.last_activity,
                        "updated_at": utcnow(),
                    },
                    "$inc": {"version": 1},
                },
            )
            if result.matched_count:
                return expected_version + 1
            current = self.collection.find_one({"_id": session_id}, {"version": 1})

        if current is None:
            raise self._not_found(session_id)
        raise VersionConflictError(
            f"Chat {session_id} changed since it was loaded",
            session_id=session_id,
            expected_version=expected_version,
            actual_version=current.get("version"),
        )

    def ping(self) -> bool:
        try:
            self.collection.database.client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False


def build_session_store(settings: Settings) -> SessionStore:
    """Construct the backend selected by ``settings.session_store_backend``."""
    if settings.session_store_backend == "mongo":
        if not settings.mongo_uri:
            raise ValueError("MONGO_URI is required when SESSION_STORE_BACKEND=mongo")
        return MongoSessionStore.from_uri(
            settings.mongo_uri,
            settings.mongo_db_name,
            settings.mongo_collection,
        )
    return InMemorySessionStore()
