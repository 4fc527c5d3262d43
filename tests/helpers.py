"""Fakes for the Gemini client, the live session and audio devices."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any

import numpy as np

from estimator.errors import PermissionDenied


class FakeAPIError(Exception):
    """Shaped like google.genai.errors.APIError."""

    def __init__(self, code: int, status: str, message: str = ""):
        super().__init__(f"{code} {status}. {message}")
        self.code = code
        self.status = status


def quota_error() -> FakeAPIError:
    return FakeAPIError(429, "RESOURCE_EXHAUSTED", "Quota exceeded for requests per minute")


def make_response(payload: Any, sources: list[tuple[str | None, str | None]] | None = None):
    """Build a generate_content response with optional grounding chunks."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    metadata = None
    if sources:
        chunks = [SimpleNamespace(web=SimpleNamespace(title=title, uri=uri)) for title, uri in sources]
        metadata = SimpleNamespace(grounding_chunks=chunks)
    return SimpleNamespace(text=text, candidates=[SimpleNamespace(grounding_metadata=metadata)])


def prompt_text(contents: Any) -> str:
    if isinstance(contents, str):
        return contents
    return contents[0].parts[0].text


def agent_router(replies: dict[str, Any], calls: list[str] | None = None):
    """generate_content side effect answering by agent role.

    A reply may be a response, an exception, or a list consumed one per call.
    """

    async def generate_content(*, model: str, contents: Any, config: Any):
        text = prompt_text(contents)
        for role, reply in replies.items():
            if f"'{role}'" not in text:
                continue
            if calls is not None:
                calls.append(role)
            if isinstance(reply, list):
                reply = reply.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return reply
        raise AssertionError(f"Unexpected prompt: {text[:80]}")

    return generate_content


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.time = now

    def now(self) -> float:
        return self.time


class FakeMicrophone:
    def __init__(self, granted: bool = True):
        self.granted = granted
        self.opened = False
        self.closed = False
        self.frames_requested = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        if not self.granted:
            raise PermissionDenied("Microphone access is required for voice mode.")
        self.opened = True

    async def frames(self):
        self.frames_requested = True
        while True:
            samples = await self._queue.get()
            if samples is None:
                return
            yield samples

    def push(self, samples: np.ndarray) -> None:
        self._queue.put_nowait(samples)

    def end(self) -> None:
        self._queue.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class FakeSpeaker:
    def __init__(self):
        self.played = []
        self.clears = 0

    async def play(self, frame) -> None:
        self.played.append(frame)

    async def clear(self) -> None:
        self.clears += 1


class FakeLiveSession:
    def __init__(self):
        self.sent = []
        self.turns = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send_realtime_input(self, *, audio) -> None:
        self.sent.append(audio)

    async def send_client_content(self, *, turns, turn_complete: bool) -> None:
        self.turns.append(turns)

    async def receive(self):
        while True:
            message = await self._incoming.get()
            if message is None:
                return
            if isinstance(message, BaseException):
                raise message
            yield message

    def push_audio(self, *chunks: bytes) -> None:
        parts = [SimpleNamespace(inline_data=SimpleNamespace(data=pcm)) for pcm in chunks]
        content = SimpleNamespace(model_turn=SimpleNamespace(parts=parts), turn_complete=False)
        self._incoming.put_nowait(SimpleNamespace(server_content=content))

    def end_turn(self) -> None:
        self._incoming.put_nowait(None)

    def drop(self) -> None:
        self._incoming.put_nowait(ConnectionError("websocket closed: 1011 internal error"))


class FakeLive:
    """Stands in for client.aio.live; records connect calls."""

    def __init__(self, session: FakeLiveSession | None = None, error: Exception | None = None):
        self.session = session or FakeLiveSession()
        self.error = error
        self.connects = []
        self.exited = False

    @asynccontextmanager
    async def connect(self, *, model: str, config: Any):
        self.connects.append((model, config))
        if self.error:
            raise self.error
        try:
            yield self.session
        finally:
            self.exited = True


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
