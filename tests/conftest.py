"""Pytest configuration and shared fixtures."""
import asyncio

import httpx
import pytest

from relay.core.errors import RemoteCallFailure
from relay.core.memory import JsonConversationStore


def gemini_body(text):
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class FakeModel:
    """Echoes the latest user prompt; yields to the loop so turns can interleave."""

    def __init__(self, delay=0.01, fail=False):
        self.delay = delay
        self.fail = fail
        self.payloads = []

    async def generate(self, payload):
        self.payloads.append(payload)
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RemoteCallFailure(code="API_ERROR", message="boom")
        last = payload["contents"][-1]["parts"][0]["text"]
        return gemini_body(f"echo: {last}")


@pytest.fixture
def convo_path(tmp_path):
    return tmp_path / "convo.json"


@pytest.fixture
def store(convo_path):
    return JsonConversationStore(convo_path)


@pytest.fixture
def fake_model():
    return FakeModel()


def trickle_handler(chunks=40, gap=0.3, headers=None):
    """MockTransport handler whose body arrives one byte every ``gap`` seconds."""

    async def body():
        for _ in range(chunks):
            await asyncio.sleep(gap)
            yield b"x"

    async def handler(request):
        return httpx.Response(200, content=body(), headers=headers or {})

    return handler
