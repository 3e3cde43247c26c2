"""
OpenClaw Gateway 客户端：对 HTTP 入口提供 connect / call_agent / call_session_status。
持有唯一一条共享的 GatewayConnection，首次调用时惰性建立；连接关闭后丢弃整条连接，
下次调用时整体重建（不做部分复用）。不自动重试，失败直接抛给调用方。
"""
import asyncio
from typing import Any, Callable, Optional

from utils.logger import gateway_logger
from .connection import DEFAULT_HANDSHAKE_TIMEOUT, GatewayConnection
from .correlator import DEFAULT_REQUEST_TIMEOUT
from .device_identity import DeviceIdentity
from . import local_to_server as lts
from . import server_to_local as stl


class GatewayClient:
    """
    OpenClaw Gateway 客户端。
    - connect() 返回已握手的连接；并发调用共享同一次建立过程。
    - call_agent(message, session_key, attachments) 返回 {text, mediaUrl, channelData, meta}。
    - call_session_status(session_key) 返回会话状态 payload。
    - on_event(name, handler) 注册事件回调，重建连接后依然有效。
    """

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        identity: Optional[DeviceIdentity] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        connection_factory: Optional[Callable[..., GatewayConnection]] = None,
    ):
        if not token and identity is None:
            raise ValueError("未配置 token 时必须提供设备身份")
        self.url = url
        self._token = token
        self._identity = identity
        self._request_timeout = request_timeout
        self._handshake_timeout = handshake_timeout
        self._connection_factory = connection_factory or GatewayConnection
        self._connection: Optional[GatewayConnection] = None
        self._connecting: Optional[asyncio.Task] = None
        self._event_handlers: list[tuple[str, Callable[[dict], Any]]] = []

    @property
    def auth_mode(self) -> str:
        return "token" if self._token else "device"

    @property
    def connection(self) -> Optional[GatewayConnection]:
        return self._connection

    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_connected()

    def on_event(self, event_name: str, handler: Callable[[dict], Any]) -> None:
        self._event_handlers.append((event_name, handler))
        if self._connection is not None:
            self._connection.on_event(event_name, handler)

    async def connect(self) -> GatewayConnection:
        if self.is_connected():
            return self._connection
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.get_running_loop().create_task(self._open_new_connection())
        # shield：单个调用方被取消不影响其它等待同一连接的调用方
        return await asyncio.shield(self._connecting)

    async def _open_new_connection(self) -> GatewayConnection:
        connection = self._connection_factory(
            self.url,
            token=self._token,
            identity=self._identity,
            request_timeout=self._request_timeout,
            handshake_timeout=self._handshake_timeout,
        )
        for event_name, handler in self._event_handlers:
            connection.on_event(event_name, handler)
        connection.register_on_close(self._on_connection_closed)
        self._connection = connection
        try:
            await connection.open()
        except BaseException:
            if self._connection is connection:
                self._connection = None
            raise
        return connection

    def _on_connection_closed(self, connection: GatewayConnection) -> None:
        if self._connection is connection:
            gateway_logger.info("Gateway 连接已关闭，下次调用时重建")
            self._connection = None

    async def call_agent(
        self,
        message: str,
        session_key: str,
        attachments: Optional[list] = None,
    ) -> dict:
        connection = await self.connect()
        gateway_logger.info(f"[Agent] 调用 sessionKey={session_key}")
        payload = await lts.send_agent(connection, message, session_key, attachments)
        return stl.extract_agent_reply(payload)

    async def call_session_status(self, session_key: str) -> Any:
        connection = await self.connect()
        return await lts.send_session_status(connection, session_key)

    async def close(self) -> None:
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
            await asyncio.gather(self._connecting, return_exceptions=True)
        connection = self._connection
        self._connection = None
        if connection is not None:
            await connection.close()
