"""
测试配置和共享 fixtures
"""
import asyncio
import json
import sys
from pathlib import Path

# 添加项目根目录到路径
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest

from core.openclaw_gateway.device_identity import DeviceIdentity

CHALLENGE = {"type": "event", "event": "connect.challenge", "payload": {"nonce": "nonce-1", "ts": 1700000000000}}
HELLO = {"type": "hello-ok", "protocol": 3, "features": {"methods": ["agent", "session_status"]}}


class FakeWebSocket:
    """内存版 WebSocket：send 记录到 sent，feed 注入服务端帧，drop 模拟服务端断开。"""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False
        self.send_gate = None

    async def connect(self, url, **kwargs):
        self.url = url
        self.connect_kwargs = kwargs
        return self

    async def send(self, data):
        if self.send_gate is not None:
            await self.send_gate.wait()
        frame = json.loads(data)
        self.sent.append(frame)
        self.on_frame(frame)

    def on_frame(self, frame):
        pass

    def feed(self, frame):
        self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self):
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)


class ScriptedGatewaySocket(FakeWebSocket):
    """
    自动应答的 Gateway：连上即推送 challenge；connect 回 hello；
    agent 先回 accepted 再回带 payloads 的终态（text 为 "echo: <message>"）；
    session_status 回 {"sessionKey", "status": "ok"}。
    """

    def __init__(self, reject_auth=False):
        super().__init__()
        self.reject_auth = reject_auth
        self.feed(CHALLENGE)

    def on_frame(self, frame):
        method = frame.get("method")
        rid = frame.get("id")
        if method == "connect":
            if self.reject_auth:
                self.feed({"type": "res", "id": rid, "ok": False, "error": {"code": "UNAUTHORIZED", "message": "bad token"}})
            else:
                self.feed({"type": "res", "id": rid, "ok": True, "payload": HELLO})
        elif method == "agent":
            params = frame.get("params") or {}
            self.feed({"type": "res", "id": rid, "ok": True, "payload": {"status": "accepted", "runId": "run-1"}})
            self.feed({
                "type": "res",
                "id": rid,
                "ok": True,
                "payload": {
                    "status": "ok",
                    "result": {
                        "payloads": [{"text": f"echo: {params.get('message')}", "channelData": {}}],
                        "meta": {"sessionKey": params.get("sessionKey")},
                    },
                },
            })
        elif method == "session_status":
            self.feed({"type": "res", "id": rid, "ok": True, "payload": {"sessionKey": frame["params"]["sessionKey"], "status": "ok"}})


async def wait_for_sent(ws, count, timeout=1.0):
    """等待 ws.sent 至少有 count 帧。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(ws.sent) < count:
        if loop.time() > deadline:
            raise AssertionError(f"期望至少 {count} 帧，实际 {len(ws.sent)}")
        await asyncio.sleep(0.01)
    return ws.sent


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def identity():
    return DeviceIdentity.generate()
