"""
OpenClaw Gateway 客户端模块。
通过单条 WebSocket 对接 OpenClaw 服务端：challenge 握手（token 或设备签名）、
按 id 关联的并发请求、事件订阅。
本地->服务端：local_to_server（agent、session_status）。
服务端->本地：server_to_local（响应分类、agent 结果提取）。
"""
from .client import GatewayClient
from .connection import ConnectionState, GatewayConnection
from .correlator import PendingRequest, RequestCorrelator, RequestPhase
from .device_identity import DeviceIdentity
from .errors import (
    GatewayAuthError,
    GatewayBusyError,
    GatewayConnectionError,
    GatewayConnectionLost,
    GatewayError,
    GatewayRequestError,
    GatewayTimeoutError,
)
from . import local_to_server
from . import server_to_local
from .protocol import (
    MAX_PROTOCOL,
    METHOD_AGENT,
    METHOD_CONNECT,
    METHOD_SESSION_STATUS,
    MIN_PROTOCOL,
    SCOPES,
    build_connect_params,
    build_request_frame,
)

__all__ = [
    "GatewayClient",
    "GatewayConnection",
    "ConnectionState",
    "RequestCorrelator",
    "PendingRequest",
    "RequestPhase",
    "DeviceIdentity",
    "GatewayError",
    "GatewayConnectionError",
    "GatewayConnectionLost",
    "GatewayAuthError",
    "GatewayTimeoutError",
    "GatewayRequestError",
    "GatewayBusyError",
    "local_to_server",
    "server_to_local",
    "MIN_PROTOCOL",
    "MAX_PROTOCOL",
    "METHOD_CONNECT",
    "METHOD_AGENT",
    "METHOD_SESSION_STATUS",
    "SCOPES",
    "build_connect_params",
    "build_request_frame",
]
