"""Fixtures for API tests."""

import json

import httpx
import pytest

from nexus_chat.llm.chat import manager as manager_module
from nexus_chat.llm.chat.manager import ChatSessionManager


class CompletionEndpoint:
    """Mock completion endpoint answering streamed and single-shot requests."""

    def __init__(self, sse_body):
        self._sse_body = sse_body
        self.deltas = ["Hi ", "there", "!"]
        self.content = "Hello!"
        self.status_code = 200
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="upstream failure")
        if payload["stream"]:
            return httpx.Response(200, content=self._sse_body(*self.deltas))
        return httpx.Response(200, json={"choices": [{"message": {"content": self.content}}]})


@pytest.fixture
def endpoint(sse_body) -> CompletionEndpoint:
    return CompletionEndpoint(sse_body)


@pytest.fixture
async def session_manager(monkeypatch, make_client, endpoint):
    """Install a session manager whose clients talk to the mock endpoint."""
    manager = ChatSessionManager(client_factory=lambda config: make_client(endpoint))
    monkeypatch.setattr(manager_module, "_manager", manager)
    yield manager
    await manager.shutdown()
