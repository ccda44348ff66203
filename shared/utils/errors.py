"""
Error taxonomy for the chat service.

Every failure the session manager can surface is one of these classes. Each
carries the HTTP status the transport layer answers with, so routes never have
to inspect provider- or database-specific exceptions.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for all chat service errors."""

    status_code: int = 500

    def __init__(self, message: str, *, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        # Set by the session manager to the turn state the failure occurred in
        self.state: Optional[str] = None


class SessionNotFoundError(ChatError):
    """Session ID not present in the store."""

    status_code = 404


class SessionConflictError(ChatError):
    """Session ID already exists, or concurrent writers could not be reconciled."""

    status_code = 409


class VersionConflictError(SessionConflictError):
    """A version-checked save found a newer stored version."""

    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        super().__init__(message, session_id=session_id)
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidInputError(ChatError):
    """Rejected before any store mutation (blank message, blank id, empty list)."""

    status_code = 400


class StoreError(ChatError):
    """Persistence backend failure."""

    status_code = 503


class ProviderError(ChatError):
    """Remote completion failure."""

    status_code = 502


class ProviderAuthError(ProviderError):
    """Provider rejected the credential."""


class ProviderRateLimitError(ProviderError):
    """Provider throttled the request."""

    status_code = 429


class ProviderResponseError(ProviderError):
    """Provider answered without usable content."""


class ProviderTimeoutError(ProviderError):
    """Completion did not finish before the deadline."""

    status_code = 504
