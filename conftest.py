"""Shared test fixtures for the Olleh Gateway tests."""

from typing import AsyncIterator, List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient

import server_config as config
from backend_client import BackendError
from olleh_server import create_app


# ============================================================================
# Fake Backend
# ============================================================================

class FakeBackend:
    """In-memory GenerationBackend that records every call."""

    def __init__(
        self,
        available: bool = True,
        text: str = "Hello, I am working correctly.",
        fragments: Sequence[str] = ("he", "llo"),
        models: Sequence[str] = ("m1", "m2"),
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        open_error: Optional[Exception] = None,
    ):
        self.available = available
        self.text = text
        self.fragments = list(fragments)
        self.models = list(models)
        self.fail_after = fail_after
        self.error = error
        self.open_error = open_error
        self.calls: List[tuple] = []

    def is_available(self) -> bool:
        self.calls.append(("is_available",))
        return self.available

    async def generate(self, model, prompt, options) -> str:
        self.calls.append(("generate", model, prompt, options))
        if self.error is not None:
            raise self.error
        return self.text

    async def stream_generate(self, model, prompt, options) -> AsyncIterator[str]:
        self.calls.append(("stream_generate", model, prompt, options))
        if self.open_error is not None:
            raise self.open_error
        return self._fragments()

    async def chat(self, model, messages, options) -> str:
        self.calls.append(("chat", model, tuple(messages), options))
        if self.error is not None:
            raise self.error
        return self.text

    async def stream_chat(self, model, messages, options) -> AsyncIterator[str]:
        self.calls.append(("stream_chat", model, tuple(messages), options))
        if self.open_error is not None:
            raise self.open_error
        return self._fragments()

    async def list_models(self) -> List[str]:
        self.calls.append(("list_models",))
        return list(self.models)

    async def _fragments(self) -> AsyncIterator[str]:
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error or BackendError("backend exploded")
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise self.error or BackendError("backend exploded")

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    return config.ServerSettings()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_client(settings):
    """Build a TestClient around a given FakeBackend."""
    def _make(fake: FakeBackend) -> TestClient:
        return TestClient(create_app(settings=settings, backend=fake))
    return _make


@pytest.fixture
def client(make_client, backend):
    return make_client(backend)
