"""
Pytest configuration and shared fixtures for Palaver chat tests.

Provides reusable test fixtures for mocking services and test data.
"""

import os
import sys
from pathlib import Path
from typing import Generator, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# main.py reads settings at import time
os.environ.setdefault("GROQ_API_KEY", "test_groq_key")
os.environ.setdefault("ENVIRONMENT", "testing")


# =============================================================================
# Configuration Fixtures
# =============================================================================
@pytest.fixture(scope="session")
def test_settings():
    """Override settings for testing environment."""
    from shared.utils import Settings

    return Settings(
        environment="testing",
        log_level="DEBUG",
        api_host="localhost",
        api_port=8000,
        groq_api_key="test_groq_key",
        provider_timeout_seconds=5.0,
    )


# =============================================================================
# Provider Fixtures
# =============================================================================
def make_completion_response(content: Optional[str], model: str = "llama-3.3-70b-versatile"):
    """Build an object shaped like a Groq chat completion."""
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content), finish_reason="stop")]
    response.model = model
    response.usage = MagicMock(prompt_tokens=42, completion_tokens=7, total_tokens=49)
    return response


def make_stream_chunk(content: Optional[str]):
    """Build an object shaped like a Groq streaming chunk."""
    chunk = MagicMock()
    chunk.choices = [MagicMock(delta=MagicMock(content=content))]
    return chunk


class FakeStream:
    """Async iterator standing in for groq's AsyncStream."""

    def __init__(self, fragments: List[Optional[str]], error: Optional[Exception] = None):
        self._chunks = [make_stream_chunk(f) for f in fragments]
        self._error = error
        self.consumed = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.consumed >= len(self._chunks):
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        chunk = self._chunks[self.consumed]
        self.consumed += 1
        return chunk

    async def close(self):
        self.closed = True


@pytest.fixture
def completion_response():
    """Factory for fake completion responses."""
    return make_completion_response


@pytest.fixture
def fake_stream():
    """Factory for fake upstream streams."""
    return FakeStream


@pytest.fixture
def mock_groq_client():
    """Mock Groq client for testing completion calls."""
    mock_client = AsyncMock()
    mock_client.chat.completions.create.return_value = make_completion_response(
        "Sure, here is what the documents say."
    )
    return mock_client


@pytest.fixture
def provider(mock_groq_client):
    """CompletionProvider wired to the mock Groq client."""
    from services.api.src.llm import CompletionProvider

    return CompletionProvider(api_key="test_groq_key", client=mock_groq_client, timeout=5.0)


@pytest.fixture
def stub_provider():
    """Provider double whose complete() returns a fixed reply."""
    from services.api.src.llm import Completion

    stub = MagicMock()
    stub.complete = AsyncMock(
        return_value=Completion(text="Here is my answer.", model="test-model")
    )
    return stub


# =============================================================================
# Store / Manager Fixtures
# =============================================================================
@pytest.fixture
def memory_store():
    """Empty in-memory session store."""
    from services.api.src.conversation import InMemorySessionStore

    return InMemorySessionStore()


@pytest.fixture
def mongo_store():
    """MongoSessionStore backed by mongomock."""
    import mongomock

    from services.api.src.conversation import MongoSessionStore

    client = mongomock.MongoClient(tz_aware=True)
    return MongoSessionStore(client["palaver_test"]["chat_sessions"])


@pytest.fixture(params=["memory", "mongo"])
def session_store(request):
    """Run store contract tests against every backend."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def session_manager(memory_store, stub_provider):
    """SessionManager over an in-memory store and a stub provider."""
    from services.api.src.conversation import SessionManager

    return SessionManager(store=memory_store, provider=stub_provider, provider_timeout=5.0)


# =============================================================================
# API Client Fixtures
# =============================================================================
@pytest.fixture
def api_client(session_manager) -> Generator:
    """
    FastAPI test client.

    The app starts normally, then its session manager is swapped for one
    that uses the stub provider.
    """
    from fastapi.testclient import TestClient

    from services.api.src.main import app

    with TestClient(app) as client:
        app.state.session_manager = session_manager
        yield client


# =============================================================================
# Pytest Hooks
# =============================================================================
def pytest_configure(config):
    """Configure pytest environment."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["LOG_LEVEL"] = "DEBUG"


def pytest_collection_modifyitems(config, items):
    """
    Automatically mark tests based on their location.

    - tests/unit/ -> @pytest.mark.unit
    - tests/integration/ -> @pytest.mark.integration
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
