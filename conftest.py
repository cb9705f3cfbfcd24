import asyncio

import orjson
import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State

from sigrelay.core.registry import Connection
from sigrelay.core.store import DurableQueue


class Clock:
    """Settable millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.t = start

    def __call__(self) -> int:
        return self.t

    def advance(self, ms: int) -> None:
        self.t += ms


class FakeSocket:
    """Stands in for a websockets ServerConnection; records decoded frames."""

    def __init__(self, *, fail_sends: bool = False) -> None:
        self.state = State.OPEN
        self.sent: list[dict] = []
        self.fail_sends = fail_sends

    async def send(self, text: str) -> None:
        if self.fail_sends or self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(orjson.loads(text))

    def close(self) -> None:
        self.state = State.CLOSED


@pytest.fixture
def clock():
    return Clock()


@pytest_asyncio.fixture
async def queue(clock):
    q = await DurableQueue.open(":memory:", now=clock)
    try:
        yield q
    finally:
        await q.close()


@pytest.fixture
def make_conn():
    def _make(identity: str = "anon", **socket_kwargs) -> Connection:
        return Connection(websocket=FakeSocket(**socket_kwargs), identity=identity)
    return _make


@pytest.fixture
def eventually():
    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return _wait


async def collect(q: DurableQueue, prefix) -> list:
    return [item async for item in q.scan_prefix(prefix)]


@pytest.fixture
def scan(queue):
    async def _scan(prefix):
        return await collect(queue, prefix)
    return _scan
