"""
Shared fakes for the sync client tests.

- FakeSocket: an in-memory WebSocket whose frames and close code the test controls.
- FakeConnector: hands out FakeSockets (or fails) in place of websockets.connect.
- FakeScheduler: a manual timer so reconnect delays can be inspected and fired.
- make_loader: a SnapshotLoader backed by httpx.MockTransport.
"""

import asyncio
import json
from collections import deque
from typing import Any, Callable

import httpx
import pytest

from mycelial_sync.client.snapshot import SnapshotLoader
from mycelial_sync.shared.config import Settings


class _Close:
    def __init__(self, code: int):
        self.code = code


class FakeSocket:
    def __init__(self):
        self.sent: list[dict] = []
        self.close_code: int | None = None
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, frame: Any) -> "FakeSocket":
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))
        return self

    def drop(self, code: int = 1006) -> "FakeSocket":
        """Simulate the server closing the socket with `code`."""
        self._inbox.put_nowait(_Close(code))
        return self

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self._inbox.put_nowait(_Close(code))

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if isinstance(item, _Close):
            if self.close_code is None:
                self.close_code = item.code
            raise StopAsyncIteration
        return item


class FakeConnector:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[str] = []
        self.sockets: list[FakeSocket] = []
        self._prepared: deque[FakeSocket] = deque()
        self.gate: asyncio.Event | None = None

    def prepare(self) -> FakeSocket:
        """Socket handed to the next successful connect, so frames can be queued up front."""
        socket = FakeSocket()
        self._prepared.append(socket)
        return socket

    async def __call__(self, url: str) -> FakeSocket:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        socket = self._prepared.popleft() if self._prepared else FakeSocket()
        self.sockets.append(socket)
        return socket


class FakeTimer:
    def __init__(self, due: float, delay: float, callback: Callable[[], None]):
        self.due = due
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    def __init__(self):
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for timer in sorted(self.pending, key=lambda t: t.due):
            if timer.due <= self.now:
                timer.fired = True
                timer.callback()

    def fire_next(self) -> FakeTimer:
        timer = min(self.pending, key=lambda t: t.due)
        self.advance(timer.due - self.now)
        return timer


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def json_routes(routes: dict[tuple[str, str], Any]) -> Callable[[httpx.Request], httpx.Response]:
    """MockTransport handler answering (method, path) with a JSON body, an int status or a Response."""

    def handler(request: httpx.Request) -> httpx.Response:
        result = routes.get((request.method, request.url.path))
        if result is None:
            return httpx.Response(404, json={"detail": "not found"})
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, int):
            return httpx.Response(result)
        if callable(result):
            return result(request)
        return httpx.Response(200, json=result)

    return handler


def make_loader(routes: dict[tuple[str, str], Any], base_url: str = "http://node.test/api") -> SnapshotLoader:
    client = httpx.AsyncClient(transport=httpx.MockTransport(json_routes(routes)))
    return SnapshotLoader(base_url, client=client)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        AUTO_CONNECT=False,
        P2P_WS_URL="ws://node.test/ws",
        ORCHESTRATOR_WS_URL="ws://node.test/ws",
        API_URL="http://node.test/api",
        ORCHESTRATOR_API_URL="http://node.test/api",
        RECONNECT_INTERVAL_S=1.0,
        MAX_RECONNECT_ATTEMPTS=3,
        CHAT_HISTORY_LIMIT=3,
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()
