"""
服务端 -> 本地：收到响应/事件后的分类、日志与结果提取。

日志含义：
- 「响应 method=agent ok=True -> LINE 回复」：该条 agent 响应将作为 LINE 回复文本返回给 HTTP 调用方。
- 「事件 event=tick/health/agent」：心跳、健康检查、agent 流式推送均不打印以免刷屏。
"""
from typing import Any, Optional

from utils.logger import gateway_logger

# 响应分类与传递目标（仅用于日志）
ROUTING = {
    "connect": "握手（连接状态机）",
    "agent": "LINE 回复：payloads[0] 的 text/mediaUrl/channelData",
    "session_status": "会话状态查询",
}

QUIET_EVENTS = ("tick", "health", "agent")

NO_RESPONSE_TEXT = "（沒有回應）"


def on_response(
    method: str,
    ok: bool,
    payload: Any,
    error: Optional[dict],
) -> None:
    """终态响应（type=res）派发前调用，仅记录「该响应将传递给哪里」。"""
    target = ROUTING.get(method, "未知")
    if ok:
        gateway_logger.debug(f"server_to_local: 响应 method={method} ok=True -> {target}")
    else:
        err_msg = str((error or {}).get("message") or "") if isinstance(error, dict) else str(error or "")
        gateway_logger.info(
            f"server_to_local: 响应 method={method} ok=False error={err_msg[:80]} -> {target}"
        )


def on_event(event_name: str, payload: Any) -> None:
    """服务端推送事件（type=event）时调用，用于日志。"""
    # tick 为网关心跳，health 为健康检查，agent 为流式推送，均不记日志以免刷屏
    if event_name in QUIET_EVENTS:
        return
    gateway_logger.debug(f"server_to_local: 事件 event={event_name}")


def extract_agent_reply(payload: Any) -> dict:
    """
    从 agent 终态 payload 中取 result.payloads[0]。
    返回 {text, mediaUrl, channelData, meta}；结构不符时返回固定的「没有回应」占位，不视为失败。
    """
    result = payload.get("result") if isinstance(payload, dict) else None
    payloads = result.get("payloads") if isinstance(result, dict) else None
    first = payloads[0] if isinstance(payloads, list) and payloads else None
    if not isinstance(first, dict):
        gateway_logger.warning("server_to_local: agent 结果缺少 payloads，返回占位回复")
        return {"text": NO_RESPONSE_TEXT, "mediaUrl": None, "channelData": {}, "meta": {}}
    channel_data = first.get("channelData")
    meta = result.get("meta")
    return {
        "text": first.get("text") or "",
        "mediaUrl": first.get("mediaUrl"),
        "channelData": channel_data if isinstance(channel_data, dict) else {},
        "meta": meta if isinstance(meta, dict) else {},
    }
