"""
HTTP routes for the chat API.
"""

from .chat import get_session_manager, router

__all__ = ["router", "get_session_manager"]
