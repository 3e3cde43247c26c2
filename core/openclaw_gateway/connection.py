"""
OpenClaw Gateway 单条 WebSocket 连接与认证状态机。

状态迁移：
    DISCONNECTED --打开 socket--> CONNECTING --传输已建立--> AWAITING_CHALLENGE
    --收到 connect.challenge--> AUTHENTICATING --connect 请求成功--> CONNECTED
任意状态下传输出错或关闭 -> CLOSED，此时所有未完成请求立即失败。CLOSED 为终态，
连接对象不重用；需要重连时由 GatewayClient 整体创建新连接。

认证模式在构造时确定：有 token 走 token 模式（auth.token），否则走设备签名模式
（对 {nonce, ts, scopes, client, device} 的规范化 JSON 做 Ed25519 签名）。

收发均在同一事件循环中：recv_loop 负责读帧分发，send_loop 从发送队列取帧写出。
"""
import asyncio
import json
import time
from enum import Enum
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidMessage, InvalidURI, WebSocketException

from utils.logger import gateway_logger
from .correlator import DEFAULT_REQUEST_TIMEOUT, RequestCorrelator
from .device_identity import DeviceIdentity
from .errors import (
    GatewayAuthError,
    GatewayBusyError,
    GatewayConnectionError,
    GatewayConnectionLost,
    GatewayError,
    GatewayRequestError,
)
from .protocol import (
    EVENT_CONNECT_CHALLENGE,
    METHOD_CONNECT,
    SCOPES,
    build_client_info,
    build_connect_params,
    build_signing_payload,
    canonical_json,
    parse_event_frame,
)
from . import server_to_local as stl

DEFAULT_HANDSHAKE_TIMEOUT = 15.0
# 发送队列上限，超出时直接报「请求繁忙」避免堆积
DEFAULT_SEND_QUEUE_MAX_SIZE = 100
PING_INTERVAL = 20
PING_TIMEOUT = 10


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    CLOSED = "closed"


def _connection_error_message(exc: BaseException) -> str:
    """将连接异常转为可读提示（返回给 HTTP 调用方）。"""
    if isinstance(exc, ConnectionRefusedError):
        return "連線被拒絕：請確認 OpenClaw Gateway 已啟動且埠號正確（如 18789）。"
    if isinstance(exc, ConnectionResetError):
        return "連線被重置：請確認 OpenClaw Gateway 已啟動，且位址正確（如 ws://127.0.0.1:18789）。"
    if isinstance(exc, InvalidMessage):
        return "未收到有效的 HTTP 回應：目標位址可能不是 WebSocket 服務或服務未啟動。"
    if isinstance(exc, InvalidURI):
        return f"Gateway 位址無效：{exc}"
    if isinstance(exc, asyncio.TimeoutError):
        return "連線 Gateway 逾時"
    return f"無法連線 Gateway：{exc}"


class GatewayConnection:
    """
    单条 Gateway 连接。
    - open() 建立连接并完成握手；失败抛 GatewayConnectionError / GatewayAuthError。
    - request(method, params) 发送请求并等待终态 payload。
    - on_event(name, handler) 订阅服务端事件，handler(payload)。
    - register_on_close(callback) 连接进入 CLOSED 时回调。
    """

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        identity: Optional[DeviceIdentity] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        send_queue_max_size: int = DEFAULT_SEND_QUEUE_MAX_SIZE,
        connect_factory: Optional[Callable[..., Any]] = None,
    ):
        if not token and identity is None:
            raise ValueError("未配置 token 时必须提供设备身份")
        self.url = url
        self._token = token
        self._identity = identity
        self._handshake_timeout = handshake_timeout
        self._send_queue_max_size = send_queue_max_size
        self._connect_factory = connect_factory or websockets.connect
        self.state = ConnectionState.DISCONNECTED
        self._ws = None
        self._correlator = RequestCorrelator(self._enqueue_frame, timeout=request_timeout)
        self._send_queue: Optional[asyncio.Queue] = None
        self._ready: Optional[asyncio.Future] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._auth_task: Optional[asyncio.Task] = None
        self._closer_task: Optional[asyncio.Task] = None
        self._closed = False
        self._hello_payload: dict = {}
        self._event_handlers: dict[str, list[Callable[[dict], Any]]] = {}
        self._on_close_callbacks: list[Callable[["GatewayConnection"], None]] = []

    @property
    def auth_mode(self) -> str:
        return "token" if self._token else "device"

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def get_hello_payload(self) -> dict:
        """握手成功后的 hello payload（含 features、snapshot 等）。"""
        return self._hello_payload

    def supported_methods(self) -> list:
        features = self._hello_payload.get("features")
        if not isinstance(features, dict):
            return []
        methods = features.get("methods")
        return list(methods) if isinstance(methods, list) else []

    def on_event(self, event_name: str, handler: Callable[[dict], Any]) -> None:
        self._event_handlers.setdefault(event_name, []).append(handler)

    def register_on_close(self, callback: Callable[["GatewayConnection"], None]) -> None:
        self._on_close_callbacks.append(callback)

    async def open(self) -> None:
        if self.state is not ConnectionState.DISCONNECTED:
            raise GatewayConnectionError("連線物件不可重複開啟")
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._set_state(ConnectionState.CONNECTING)
        gateway_logger.info(f"Gateway 开始连接: {self.url}（认证模式: {self.auth_mode}）")
        try:
            self._ws = await asyncio.wait_for(self._open_socket(), timeout=self._handshake_timeout)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            gateway_logger.warning(f"Gateway 连接失败: {e!r}")
            self._ready.cancel()
            self._on_transport_closed(str(e))
            raise GatewayConnectionError(_connection_error_message(e)) from e
        except asyncio.CancelledError:
            self._ready.cancel()
            self._on_transport_closed("連線已取消")
            raise

        self._send_queue = asyncio.Queue()
        self._set_state(ConnectionState.AWAITING_CHALLENGE)
        self._reader_task = loop.create_task(self._recv_loop())
        self._sender_task = loop.create_task(self._send_loop())
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._handshake_timeout)
        except asyncio.TimeoutError:
            gateway_logger.warning(f"Gateway 握手超时（{self._handshake_timeout}s），state={self.state.value}")
            self._ready.cancel()
            await self.close()
            raise GatewayConnectionError("Gateway 握手逾時") from None
        except GatewayError:
            await self.close()
            raise
        except asyncio.CancelledError:
            # 建连过程被取消（如 GatewayClient.close），收发任务与 socket 一并关闭
            self._ready.cancel()
            await self.close()
            raise
        gateway_logger.info("Gateway 握手成功，收发循环已启动")

    async def _open_socket(self):
        return await self._connect_factory(
            self.url,
            ping_interval=PING_INTERVAL,
            ping_timeout=PING_TIMEOUT,
        )

    async def request(self, method: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        """发送业务请求；未处于 CONNECTED 时直接失败。"""
        if not self.is_connected():
            raise GatewayConnectionLost("未連線到 Gateway")
        return await self._correlator.send(method, params, timeout=timeout)

    async def close(self) -> None:
        """本地主动关闭：未完成请求立即失败，收发任务结束，socket 关闭。"""
        self._on_transport_closed("連線已由本地關閉")
        current = asyncio.current_task()
        tasks = [
            t for t in (self._reader_task, self._sender_task, self._auth_task, self._closer_task)
            if t is not None and t is not current
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is not state:
            gateway_logger.debug(f"Gateway 状态: {self.state.value} -> {state.value}")
            self.state = state

    def _enqueue_frame(self, frame: dict) -> None:
        q = self._send_queue
        if q is None or self._closed:
            raise GatewayConnectionLost("連線已關閉")
        if q.qsize() >= self._send_queue_max_size:
            gateway_logger.warning(f"Gateway 发送队列已满 ({q.qsize()} >= {self._send_queue_max_size})")
            raise GatewayBusyError("請求繁忙，請稍後再試")
        q.put_nowait(frame)

    async def _send_loop(self) -> None:
        try:
            while True:
                frame = await self._send_queue.get()
                await self._ws.send(json.dumps(frame, ensure_ascii=False))
        except (OSError, WebSocketException) as e:
            gateway_logger.warning(f"Gateway send 结束: {e!r}")
            self._on_transport_closed(f"傳送失敗: {e}")

    async def _recv_loop(self) -> None:
        reason = "連線已關閉"
        try:
            async for raw in self._ws:
                try:
                    self._handle_raw(raw)
                except Exception as e:
                    # 单帧处理失败只丢弃该帧，读循环继续
                    gateway_logger.exception(f"Gateway 帧处理异常，已丢弃: {e}")
        except ConnectionClosed as e:
            reason = f"連線已關閉: {e}"
        except (OSError, WebSocketException) as e:
            gateway_logger.warning(f"Gateway recv 结束: {e!r}")
            reason = f"連線異常: {e}"
        gateway_logger.info(f"Gateway WebSocket 已关闭: {reason}")
        self._on_transport_closed(reason)

    def _handle_raw(self, raw) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            gateway_logger.warning(f"Gateway 帧解析失败，已丢弃: {e}")
            return
        if not isinstance(data, dict):
            gateway_logger.warning(f"Gateway 帧不是对象，已丢弃: {type(data).__name__}")
            return
        frame_type = data.get("type")
        if frame_type == "res":
            self._correlator.handle_response(data)
            return
        if frame_type == "event":
            self._handle_event(data)
            return
        gateway_logger.debug(f"Gateway 未处理帧: type={frame_type}")

    def _handle_event(self, data: dict) -> None:
        event_name, payload = parse_event_frame(data)
        if event_name == EVENT_CONNECT_CHALLENGE:
            if self.state is not ConnectionState.AWAITING_CHALLENGE:
                gateway_logger.warning(f"Gateway 非预期的 connect.challenge，state={self.state.value}")
                return
            gateway_logger.info("Gateway 收到 connect.challenge")
            self._set_state(ConnectionState.AUTHENTICATING)
            self._auth_task = asyncio.get_running_loop().create_task(
                self._authenticate(payload if isinstance(payload, dict) else {})
            )
            return
        if not event_name:
            gateway_logger.warning("Gateway 事件帧缺少 event 名称，已丢弃")
            return
        stl.on_event(event_name, payload)
        for handler in list(self._event_handlers.get(event_name, ())):
            try:
                result = handler(payload if isinstance(payload, dict) else {})
                if asyncio.iscoroutine(result):
                    asyncio.get_running_loop().create_task(result)
            except Exception as e:
                gateway_logger.exception(f"Gateway 事件处理失败: event={event_name}: {e}")

    def _build_connect_params(self, challenge: dict) -> dict:
        client = build_client_info()
        if self._token:
            return build_connect_params(client=client, token=self._token)
        identity = self._identity
        signed_at = int(time.time() * 1000)
        public_key = identity.public_key_b64url()
        signing_payload = build_signing_payload(
            nonce=challenge.get("nonce") or "",
            ts=challenge.get("ts"),
            scopes=SCOPES,
            client=client,
            device_id=identity.device_id,
            public_key=public_key,
            signed_at=signed_at,
        )
        device = {
            "id": identity.device_id,
            "publicKey": public_key,
            "signedAt": signed_at,
            "signature": identity.sign_b64url(canonical_json(signing_payload)),
        }
        return build_connect_params(client=client, device=device)

    async def _authenticate(self, challenge: dict) -> None:
        try:
            payload = await self._correlator.send(METHOD_CONNECT, self._build_connect_params(challenge))
        except GatewayRequestError as e:
            gateway_logger.warning(f"Gateway 握手被拒绝: {e}")
            self._fail_handshake(GatewayAuthError(f"Gateway 認證失敗：{e}"))
            return
        except GatewayError as e:
            self._fail_handshake(e)
            return
        if self._closed:
            return
        self._hello_payload = payload if isinstance(payload, dict) else {}
        self._set_state(ConnectionState.CONNECTED)
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

    def _fail_handshake(self, exc: Exception) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(exc)

    def _on_transport_closed(self, reason: str) -> None:
        """进入 CLOSED：未完成请求全部失败，停止收发任务，关闭 socket，通知订阅方。只执行一次。"""
        if self._closed:
            return
        self._closed = True
        self._set_state(ConnectionState.CLOSED)
        lost = GatewayConnectionLost(f"Gateway 連線中斷：{reason}")
        self._correlator.fail_all(lost)
        self._fail_handshake(lost)
        current = asyncio.current_task()
        # 握手任务不取消：fail_all 已让其等待的请求失败，它会自行结束
        for task in (self._reader_task, self._sender_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self._ws is not None:
            self._closer_task = asyncio.get_running_loop().create_task(self._close_socket())
        for callback in list(self._on_close_callbacks):
            try:
                callback(self)
            except Exception as e:
                gateway_logger.exception(f"Gateway 关闭回调失败: {e}")

    async def _close_socket(self) -> None:
        try:
            await self._ws.close()
        except (OSError, WebSocketException) as e:
            gateway_logger.debug(f"Gateway 关闭 socket 失败: {e!r}")
