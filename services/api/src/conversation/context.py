"""
Context assembly for completion requests.

Pure functions: given a session's messages and document references they build
the system preamble and the bounded message window sent to the provider.
Nothing here touches the store, so the output depends only on the arguments.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence

from shared.models import Message, MessageRole

# Only the tail of the history is resent; older messages stay in the store
MAX_WINDOW_MESSAGES = 10

DEFAULT_INSTRUCTIONS = "Respond in Pidgin with useful insight. Be helpful and conversational."


@dataclass(frozen=True)
class ContextWindow:
    """System preamble plus the messages forwarded to the provider."""

    system_prompt: str
    messages: List[Dict[str, str]]


def build_document_context(document_refs: Sequence[str]) -> str:
    """Sentence naming the attached documents, or saying there are none."""
    if document_refs:
        return f"Based on your uploaded documents: {', '.join(document_refs)}.\n"
    return "No documents uploaded.\n"


def is_new_conversation(messages: Sequence[Message]) -> bool:
    """
    True only for an empty history.

    The turn protocol appends the pending user message before assembling
    context, so every turn sent to the provider is framed as a continuation.
    """
    return not messages


def build_conversation_context(messages: Sequence[Message]) -> str:
    if is_new_conversation(messages):
        return "This is the start of a new conversation.\n"
    return (
        "Continue this conversation naturally. "
        "Previous context is available in the message history.\n"
    )


def build_system_context(
    messages: Sequence[Message],
    document_refs: Sequence[str],
    instructions: str = DEFAULT_INSTRUCTIONS,
) -> str:
    """Full system preamble: documents line, framing line, instructions."""
    return (
        build_document_context(document_refs)
        + build_conversation_context(messages)
        + instructions
    )


def select_window(
    messages: Sequence[Message],
    limit: int = MAX_WINDOW_MESSAGES,
) -> List[Dict[str, str]]:
    """
    Most recent ``limit`` messages in original order, as {role, content}.

    Args:
        messages: Full session history, oldest first
        limit: Maximum number of messages to keep

    Returns:
        Prompt-shaped message dicts
    """
    if limit <= 0:
        return []
    return [msg.to_prompt() for msg in messages[-limit:]]


def assemble_context(
    messages: Sequence[Message],
    document_refs: Sequence[str],
    instructions: str = DEFAULT_INSTRUCTIONS,
    limit: int = MAX_WINDOW_MESSAGES,
) -> ContextWindow:
    """
    Build the provider request for a session.

    The system entry always comes first, followed by at most ``limit``
    history messages.
    """
    system_prompt = build_system_context(messages, document_refs, instructions)
    window = [{"role": MessageRole.SYSTEM.value, "content": system_prompt}]
    window.extend(select_window(messages, limit))
    return ContextWindow(system_prompt=system_prompt, messages=window)
