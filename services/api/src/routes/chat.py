"""
Chat routes.

Thin HTTP layer over SessionManager. Errors from the manager are ChatError
subclasses and are turned into responses by the handler registered in main.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from shared.models import (
    CreateSessionRequest,
    SendMessageRequest,
    Session,
    SessionActionResponse,
    SessionStats,
    SessionSummary,
    StreamRequest,
    TurnResult,
)
from shared.utils import get_logger

from ..conversation import SessionManager

router = APIRouter(prefix="/api/v1/chat", tags=["Chat"])
logger = get_logger(__name__)

# Optimistic-lock bookkeeping, never shown to clients
INTERNAL_FIELDS = {"version"}


def get_session_manager(request: Request) -> SessionManager:
    """Session manager built during application startup."""
    manager = getattr(request.app.state, "session_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat service is not initialized",
        )
    return manager


def _not_found(session_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"message": "Chat not found", "error": f"No chat found with ID: {session_id}"},
    )


@router.post("/message", response_model=TurnResult)
async def send_message(
    body: SendMessageRequest,
    x_user_id: Optional[str] = Header(None),
    manager: SessionManager = Depends(get_session_manager),
) -> TurnResult:
    """
    Send a user message and get the assistant's reply.

    Creates the chat on first use. The owner may be given in the body or as
    the ``X-User-Id`` header set by the identity layer.
    """
    logger.info(f"Processing message for chat: {body.session_id}")
    return await manager.send_message(
        session_id=body.session_id,
        text=body.message,
        document_refs=body.document_refs,
        owner_id=body.owner_id or x_user_id,
    )


@router.post("/stream")
async def stream_reply(
    body: StreamRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> StreamingResponse:
    """
    Stream a reply to a one-off prompt as plain text.

    The upstream stream is opened before the response starts, so provider
    failures are answered with their own status code.
    """
    fragments = await manager.stream_reply(body.prompt)
    return StreamingResponse(fragments, media_type="text/plain")


@router.get("/all", response_model=List[SessionSummary])
async def list_sessions(
    owner_id: Optional[str] = None,
    manager: SessionManager = Depends(get_session_manager),
) -> List[SessionSummary]:
    """All chats, most recently active first."""
    logger.info(f"Fetching all chats{f' for user: {owner_id}' if owner_id else ''}")
    return await manager.list_sessions(owner_id)


@router.get(
    "/history/{session_id}",
    response_model=Session,
    response_model_exclude=INTERNAL_FIELDS,
)
async def get_history(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> Session:
    logger.info(f"Fetching chat history for: {session_id}")
    return await manager.get_history(session_id)


@router.get("/stats/{session_id}", response_model=SessionStats)
async def get_stats(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionStats:
    logger.info(f"Fetching stats for chat: {session_id}")
    return await manager.get_stats(session_id)


@router.post(
    "/create",
    response_model=Session,
    response_model_exclude=INTERNAL_FIELDS,
    status_code=status.HTTP_201_CREATED,
)
async def create_session(
    body: CreateSessionRequest,
    x_user_id: Optional[str] = Header(None),
    manager: SessionManager = Depends(get_session_manager),
) -> Session:
    """Create an empty chat. Answers 409 when the id is already taken."""
    logger.info(f"Creating new chat: {body.session_id}")
    return await manager.create_session(
        body.session_id,
        document_refs=body.document_refs,
        owner_id=body.owner_id or x_user_id,
    )


@router.delete("/{session_id}", response_model=SessionActionResponse)
async def delete_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionActionResponse:
    logger.info(f"Deleting chat: {session_id}")
    if not await manager.delete_session(session_id):
        raise _not_found(session_id)
    return SessionActionResponse(
        message="Chat deleted successfully", session_id=session_id, deleted=True
    )


@router.post("/{session_id}/clear", response_model=SessionActionResponse)
async def clear_history(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionActionResponse:
    logger.info(f"Clearing chat history for: {session_id}")
    if not await manager.clear_history(session_id):
        raise _not_found(session_id)
    return SessionActionResponse(
        message="Chat history cleared successfully", session_id=session_id, cleared=True
    )
