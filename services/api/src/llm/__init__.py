"""
Completion provider integration.
"""

from .provider import Completion, CompletionProvider, translate_provider_error

__all__ = ["Completion", "CompletionProvider", "translate_provider_error"]
