"""
OpenClaw Gateway 协议常量与帧构建。
帧格式：
- 请求 {type: "req", id, method, params}
- 响应 {type: "res", id, ok?, error?, payload}；payload.status == "accepted" 为中间确认，非终态
- 事件 {type: "event", event, payload}；握手前服务端先推送 connect.challenge {nonce, ts}
"""
import json
import sys
import uuid
from typing import Any, Optional

MIN_PROTOCOL = 3
MAX_PROTOCOL = 3

METHOD_CONNECT = "connect"
METHOD_AGENT = "agent"
METHOD_SESSION_STATUS = "session_status"

EVENT_CONNECT_CHALLENGE = "connect.challenge"

STATUS_ACCEPTED = "accepted"
STATUS_OK = "ok"
STATUS_ERROR = "error"

# 后端程序化客户端在 Gateway 客户端注册表中的标识
DEFAULT_CLIENT_ID = "gateway-client"
DEFAULT_CLIENT_MODE = "backend"
CLIENT_VERSION = "1.0.0"

SCOPES = ("agent", "operator.write", "operator.admin")


def platform_name() -> str:
    """当前平台名称（connect 请求 client.platform）。"""
    if sys.platform == "win32":
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def build_client_info(
    *,
    client_id: str = DEFAULT_CLIENT_ID,
    mode: str = DEFAULT_CLIENT_MODE,
    version: str = CLIENT_VERSION,
    platform: Optional[str] = None,
) -> dict:
    return {
        "id": client_id,
        "mode": mode,
        "version": version,
        "platform": platform or platform_name(),
    }


def build_connect_params(
    *,
    client: Optional[dict] = None,
    scopes=SCOPES,
    min_protocol: int = MIN_PROTOCOL,
    max_protocol: int = MAX_PROTOCOL,
    token: str = "",
    device: Optional[dict] = None,
) -> dict:
    """
    构建 connect 请求的 params。
    token 非空为 token 模式（auth.token）；否则须传入已签名的 device 块（设备签名模式）。
    """
    params = {
        "minProtocol": min_protocol,
        "maxProtocol": max_protocol,
        "scopes": list(scopes),
        "client": client if client is not None else build_client_info(),
    }
    if token:
        params["auth"] = {"token": token}
    elif device is not None:
        params["device"] = device
    return params


def build_signing_payload(
    *,
    nonce: str,
    ts: Any,
    scopes,
    client: dict,
    device_id: str,
    public_key: str,
    signed_at: int,
) -> dict:
    """设备签名模式下待签名的内容：绑定本次 challenge 的 nonce/ts 与客户端信息。"""
    return {
        "nonce": nonce,
        "ts": ts,
        "scopes": list(scopes),
        "client": client,
        "device": {
            "id": device_id,
            "publicKey": public_key,
            "signedAt": signed_at,
        },
    }


def canonical_json(data: Any) -> bytes:
    """规范化 JSON：键排序、无多余空白、UTF-8。签名与验签两端须使用相同序列化。"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_request_frame(method: str, params: dict = None, req_id: Optional[str] = None) -> tuple[str, dict]:
    """构建请求帧 (type=req, id, method, params)。返回 (req_id, frame_dict)。"""
    req_id = req_id or new_request_id()
    frame = {
        "type": "req",
        "id": req_id,
        "method": method,
        "params": params if params is not None else {},
    }
    return req_id, frame


def parse_response_frame(data: dict) -> tuple[str | None, bool | None, dict | None, dict | None]:
    """解析响应帧。返回 (id, ok, payload, error)。非 res 帧返回 (None, None, None, None)。"""
    if not isinstance(data, dict) or data.get("type") != "res":
        return None, None, None, None
    rid = data.get("id")
    # id 必须是字符串，否则无法作为 pending 表的键
    if not isinstance(rid, str):
        return None, None, None, None
    error = data.get("error")
    if error is not None and not isinstance(error, dict):
        error = {"message": str(error)}
    elif isinstance(error, dict) and error.get("message") is not None and not isinstance(error["message"], str):
        error = dict(error, message=str(error["message"]))
    return (
        rid,
        data.get("ok"),
        data.get("payload"),
        error,
    )


def parse_event_frame(data: dict) -> tuple[str | None, dict | None]:
    """解析事件帧。返回 (event_name, payload)。非 event 帧或 event 不是字符串时返回 (None, None)。"""
    if not isinstance(data, dict) or data.get("type") != "event":
        return None, None
    event_name = data.get("event")
    if not isinstance(event_name, str):
        return None, None
    return event_name, data.get("payload")


def response_status(payload: Any) -> Optional[str]:
    """响应 payload.status（如 accepted/ok/error）；无则 None。"""
    if isinstance(payload, dict):
        status = payload.get("status")
        if isinstance(status, str):
            return status
    return None


def is_accepted(payload: Any) -> bool:
    """是否为中间确认（accepted），此时请求仍在等待终态响应。"""
    return response_status(payload) == STATUS_ACCEPTED


def error_message(error: Optional[dict], payload: Any = None, default: str = "Gateway 请求失败") -> str:
    """从 error.message 或 payload.summary 取错误文本。"""
    if isinstance(error, dict):
        msg = error.get("message")
        if msg:
            return str(msg)
    if isinstance(payload, dict):
        summary = payload.get("summary")
        if summary:
            return str(summary)
    return default
