import asyncio
import json

import httpx
import pytest
import pytest_asyncio
from websockets.asyncio.client import connect

from sigrelay.server.runtime import RelayRuntime


@pytest_asyncio.fixture
async def runtime(tmp_path):
    (tmp_path / "index.html").write_text("<title>relay</title>")
    rt = RelayRuntime(
        {
            "listen": "127.0.0.1:0",
            "db_path": ":memory:",
            "static_dir": str(tmp_path),
            "poll_interval_ms": 100,
        }
    )
    await rt.start()
    try:
        yield rt
    finally:
        await rt.stop()


def url(rt) -> str:
    return f"ws://127.0.0.1:{rt.port}"


async def register(ws, client_id: str) -> None:
    await ws.send(json.dumps({"type": "register", "client_id": client_id}))


async def queued(rt, target: str) -> list:
    return [item async for item in rt.queue.scan_prefix(("messages", target))]


@pytest.mark.asyncio
async def test_offer_waits_in_queue_until_callee_connects(runtime, eventually):
    async with connect(url(runtime)) as caller:
        await register(caller, "caller-1")
        offer = {"type": "offer", "source": "caller-1", "target": "callee-1", "payload": {"sdp": "v=0"}}
        await caller.send(json.dumps(offer))

        entries = await eventually(lambda: queued(runtime, "callee-1"))
        assert len(entries) == 1
        key, _ = entries[0]
        assert key[:2] == ("messages", "callee-1")

        async with connect(url(runtime)) as callee:
            await register(callee, "callee-1")
            got = json.loads(await asyncio.wait_for(callee.recv(), timeout=0.5))

            assert got["type"] == "offer"
            assert got["sender_id"] == "caller-1"
            assert got["payload"] == {"sdp": "v=0"}
            assert isinstance(got["timestamp"], int)

            await eventually(lambda: _no_entries(runtime, "callee-1"))


async def _no_entries(rt, target):
    return await queued(rt, target) == []


@pytest.mark.asyncio
async def test_lobby_broadcast_reaches_prefix_only(runtime, eventually):
    async with connect(url(runtime)) as a, connect(url(runtime)) as b, connect(url(runtime)) as other:
        for ws, name in ((a, "lobby-a"), (b, "lobby-b"), (other, "other-1")):
            await register(ws, name)
        await eventually(lambda: {"lobby-a", "lobby-b", "other-1"} <= set(runtime.registry.identities()))

        await other.send(json.dumps({"type": "hello", "source": "other-1", "target": "lobby*", "payload": {}}))

        for ws in (a, b):
            got = json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))
            assert got["type"] == "hello"
            assert got["sender_id"] == "other-1"

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(other.recv(), timeout=0.3)
        assert [item async for item in runtime.queue.scan_prefix(("messages",))] == []


@pytest.mark.asyncio
async def test_malformed_frame_keeps_connection_open(runtime, eventually):
    async with connect(url(runtime)) as ws:
        await register(ws, "solo")
        await ws.send("{not json")
        await ws.send(json.dumps({"type": "offer"}))
        await ws.send(json.dumps({"type": "note", "source": "solo", "target": "solo", "payload": 1}))

        got = json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))
        assert got["type"] == "note"


@pytest.mark.asyncio
async def test_disconnect_removes_registration(runtime, eventually):
    async with connect(url(runtime)) as ws:
        await register(ws, "short-lived")
        await eventually(lambda: "short-lived" in runtime.registry)

    await eventually(lambda: "short-lived" not in runtime.registry)
    assert len(runtime.registry) == 0


@pytest.mark.asyncio
async def test_http_endpoints_share_the_port(runtime):
    async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{runtime.port}") as client:
        ice = await client.get("/ice-servers")
        assert ice.status_code == 200
        assert ice.json() == {"ice_servers": [{"urls": "stun:stun.l.google.com:19302"}]}

        page = await client.get("/")
        assert page.status_code == 200
        assert page.text == "<title>relay</title>"
        assert page.headers["content-type"] == "text/html"

        missing = await client.get("/nope.js")
        assert missing.status_code == 404
