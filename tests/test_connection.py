import asyncio
import base64

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from conftest import CHALLENGE, HELLO, wait_for_sent, wait_until
from core.openclaw_gateway.connection import ConnectionState, GatewayConnection
from core.openclaw_gateway.errors import (
    GatewayAuthError,
    GatewayBusyError,
    GatewayConnectionError,
    GatewayConnectionLost,
    GatewayRequestError,
)
from core.openclaw_gateway.protocol import build_signing_payload, canonical_json


def _b64url_decode(value):
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


async def _open(conn, ws, hello=None):
    """驱动一次完整握手，返回 connect 请求帧。"""
    open_task = asyncio.create_task(conn.open())
    ws.feed(CHALLENGE)
    frames = await wait_for_sent(ws, 1)
    connect_req = frames[0]
    ws.feed({"type": "res", "id": connect_req["id"], "ok": True, "payload": hello or HELLO})
    await open_task
    return connect_req


@pytest.mark.asyncio
async def test_token_handshake(fake_ws):
    conn = GatewayConnection("ws://gw", token="secret", connect_factory=fake_ws.connect)
    assert conn.state is ConnectionState.DISCONNECTED
    req = await _open(conn, fake_ws)
    assert req["method"] == "connect"
    assert req["params"]["auth"] == {"token": "secret"}
    assert req["params"]["minProtocol"] == 3
    assert conn.state is ConnectionState.CONNECTED
    assert conn.supported_methods() == ["agent", "session_status"]
    assert fake_ws.connect_kwargs == {"ping_interval": 20, "ping_timeout": 10}
    await conn.close()
    assert conn.state is ConnectionState.CLOSED
    assert fake_ws.closed


@pytest.mark.asyncio
async def test_device_handshake_signature_verifies(fake_ws, identity):
    conn = GatewayConnection("ws://gw", identity=identity, connect_factory=fake_ws.connect)
    req = await _open(conn, fake_ws)
    params = req["params"]
    assert "auth" not in params
    device = params["device"]
    assert device["id"] == identity.device_id
    signed = build_signing_payload(
        nonce=CHALLENGE["payload"]["nonce"],
        ts=CHALLENGE["payload"]["ts"],
        scopes=params["scopes"],
        client=params["client"],
        device_id=device["id"],
        public_key=device["publicKey"],
        signed_at=device["signedAt"],
    )
    public_key = Ed25519PublicKey.from_public_bytes(_b64url_decode(device["publicKey"]))
    public_key.verify(_b64url_decode(device["signature"]), canonical_json(signed))
    await conn.close()


@pytest.mark.asyncio
async def test_no_request_before_challenge(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect, handshake_timeout=1)
    open_task = asyncio.create_task(conn.open())
    await wait_until(lambda: conn.state is ConnectionState.AWAITING_CHALLENGE)
    await asyncio.sleep(0.05)
    assert fake_ws.sent == []
    with pytest.raises(GatewayConnectionLost):
        await conn.request("agent", {})
    fake_ws.feed(CHALLENGE)
    frames = await wait_for_sent(fake_ws, 1)
    fake_ws.feed({"type": "res", "id": frames[0]["id"], "ok": True, "payload": HELLO})
    await open_task
    await conn.close()


@pytest.mark.asyncio
async def test_auth_rejection_raises_auth_error(fake_ws):
    conn = GatewayConnection("ws://gw", token="bad", connect_factory=fake_ws.connect)
    open_task = asyncio.create_task(conn.open())
    fake_ws.feed(CHALLENGE)
    frames = await wait_for_sent(fake_ws, 1)
    fake_ws.feed({"type": "res", "id": frames[0]["id"], "ok": False, "error": {"message": "invalid token"}})
    with pytest.raises(GatewayAuthError, match="invalid token"):
        await open_task
    assert conn.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_handshake_timeout_without_challenge(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect, handshake_timeout=0.1)
    with pytest.raises(GatewayConnectionError):
        await conn.open()
    assert conn.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_socket_open_failure():
    async def refuse(url, **kwargs):
        raise ConnectionRefusedError(111, "Connection refused")

    conn = GatewayConnection("ws://gw", token="t", connect_factory=refuse)
    with pytest.raises(GatewayConnectionError, match="連線被拒絕"):
        await conn.open()
    assert conn.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_agent_request_two_phase(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect)
    await _open(conn, fake_ws)
    task = asyncio.create_task(conn.request("agent", {"message": "hi"}))
    frames = await wait_for_sent(fake_ws, 2)
    rid = frames[1]["id"]
    fake_ws.feed({"type": "res", "id": rid, "ok": True, "payload": {"status": "accepted"}})
    await asyncio.sleep(0.05)
    assert not task.done()
    fake_ws.feed({"type": "res", "id": rid, "ok": True, "payload": {"status": "ok", "result": {"payloads": []}}})
    assert await task == {"status": "ok", "result": {"payloads": []}}
    await conn.close()


@pytest.mark.asyncio
async def test_server_close_rejects_pending_requests(fake_ws):
    closed = []
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect, request_timeout=30)
    conn.register_on_close(closed.append)
    await _open(conn, fake_ws)
    tasks = [asyncio.create_task(conn.request("agent", {"n": i})) for i in range(3)]
    await wait_for_sent(fake_ws, 4)
    fake_ws.drop()
    results = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=1)
    assert all(isinstance(r, GatewayConnectionLost) for r in results)
    assert conn.state is ConnectionState.CLOSED
    assert closed == [conn]
    assert conn.correlator.pending_count == 0
    with pytest.raises(GatewayConnectionLost):
        await conn.request("agent", {})
    await conn.close()


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect)
    await _open(conn, fake_ws)
    fake_ws.feed("not json")
    fake_ws.feed("[1, 2, 3]")
    fake_ws.feed({"type": "res", "id": "unknown", "ok": True, "payload": {}})
    fake_ws.feed({"type": "mystery"})
    task = asyncio.create_task(conn.request("session_status", {"sessionKey": "k"}))
    frames = await wait_for_sent(fake_ws, 2)
    fake_ws.feed({"type": "res", "id": frames[1]["id"], "ok": True, "payload": {"status": "ok"}})
    assert await task == {"status": "ok"}
    assert conn.is_connected()
    await conn.close()


@pytest.mark.asyncio
async def test_event_handlers_receive_payload(fake_ws):
    seen = []
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect)
    conn.on_event("presence", seen.append)

    async def async_handler(payload):
        seen.append(("async", payload))

    conn.on_event("presence", async_handler)
    await _open(conn, fake_ws)
    fake_ws.feed({"type": "event", "event": "presence", "payload": {"who": "a"}})
    await wait_until(lambda: len(seen) == 2)
    assert seen == [{"who": "a"}, ("async", {"who": "a"})]
    # 已连接后再来的 challenge 不会触发二次握手
    fake_ws.feed(CHALLENGE)
    await asyncio.sleep(0.05)
    assert len(fake_ws.sent) == 1
    await conn.close()


@pytest.mark.asyncio
async def test_send_queue_backpressure(fake_ws):
    conn = GatewayConnection(
        "ws://gw", token="t", connect_factory=fake_ws.connect, send_queue_max_size=1,
    )
    await _open(conn, fake_ws)
    fake_ws.send_gate = asyncio.Event()
    first = asyncio.create_task(conn.request("agent", {"n": 1}))
    await asyncio.sleep(0.05)
    second = asyncio.create_task(conn.request("agent", {"n": 2}))
    await asyncio.sleep(0.05)
    with pytest.raises(GatewayBusyError):
        await conn.request("agent", {"n": 3})
    await conn.close()
    results = await asyncio.gather(first, second, return_exceptions=True)
    assert all(isinstance(r, GatewayConnectionLost) for r in results)


@pytest.mark.asyncio
async def test_open_twice_is_rejected(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect)
    await _open(conn, fake_ws)
    with pytest.raises(GatewayConnectionError):
        await conn.open()
    await conn.close()


def test_requires_token_or_identity():
    with pytest.raises(ValueError):
        GatewayConnection("ws://gw")



@pytest.mark.asyncio
async def test_frames_with_non_string_id_or_event_keep_connection_alive(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect)
    await _open(conn, fake_ws)
    fake_ws.feed({"type": "res", "id": [1], "ok": True, "payload": {}})
    fake_ws.feed({"type": "res", "id": {"nested": 1}, "ok": False})
    fake_ws.feed({"type": "event", "event": {"name": "presence"}, "payload": {}})
    fake_ws.feed({"type": "event", "event": ["tick"]})
    task = asyncio.create_task(conn.request("session_status", {"sessionKey": "k"}))
    frames = await wait_for_sent(fake_ws, 2)
    fake_ws.feed({"type": "res", "id": frames[1]["id"], "ok": True, "payload": {"status": "ok"}})
    assert await asyncio.wait_for(task, timeout=1) == {"status": "ok"}
    assert conn.is_connected()
    assert not conn._reader_task.done()
    await conn.close()


@pytest.mark.asyncio
async def test_non_string_error_message_rejects_request(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect)
    await _open(conn, fake_ws)
    task = asyncio.create_task(conn.request("agent", {"message": "hi"}))
    frames = await wait_for_sent(fake_ws, 2)
    fake_ws.feed({"type": "res", "id": frames[1]["id"], "ok": False, "error": {"message": 42, "code": 7}})
    with pytest.raises(GatewayRequestError) as exc_info:
        await asyncio.wait_for(task, timeout=1)
    assert str(exc_info.value) == "42"
    assert exc_info.value.code == 7
    assert conn.is_connected()
    assert not conn._reader_task.done()
    await conn.close()


@pytest.mark.asyncio
async def test_frame_handling_exception_does_not_stop_reader(fake_ws, monkeypatch):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect)
    await _open(conn, fake_ws)
    original = conn.correlator.handle_response
    calls = []

    def flaky(data):
        calls.append(data)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return original(data)

    monkeypatch.setattr(conn.correlator, "handle_response", flaky)
    fake_ws.feed({"type": "res", "id": "whatever", "ok": True, "payload": {}})
    await wait_until(lambda: len(calls) == 1)
    task = asyncio.create_task(conn.request("session_status", {"sessionKey": "k"}))
    frames = await wait_for_sent(fake_ws, 2)
    fake_ws.feed({"type": "res", "id": frames[1]["id"], "ok": True, "payload": {"status": "ok"}})
    assert await asyncio.wait_for(task, timeout=1) == {"status": "ok"}
    assert conn.is_connected()
    await conn.close()


@pytest.mark.asyncio
async def test_cancelled_open_closes_socket_and_tasks(fake_ws):
    conn = GatewayConnection("ws://gw", token="t", connect_factory=fake_ws.connect, handshake_timeout=5)
    open_task = asyncio.create_task(conn.open())
    await wait_until(lambda: conn.state is ConnectionState.AWAITING_CHALLENGE)
    open_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await open_task
    assert conn.state is ConnectionState.CLOSED
    assert fake_ws.closed
    assert conn._reader_task.done()
    assert conn._sender_task.done()
