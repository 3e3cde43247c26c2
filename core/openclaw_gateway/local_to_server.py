"""
本地 -> 服务端：统一封装发往 Gateway 的业务请求。
connection 为已握手的 GatewayConnection；失败以 GatewayError 子类抛出。
"""
import uuid
from typing import Any, Optional

from utils.logger import gateway_logger
from .protocol import METHOD_AGENT, METHOD_SESSION_STATUS


def build_agent_params(
    message: str,
    session_key: str,
    attachments: Optional[list] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    agent 请求参数。idempotencyKey 每次调用新生成，供 Gateway 去重；
    deliver=False 表示回复由本桥接返回，不由 Gateway 直接投递到渠道。
    """
    params = {
        "message": message,
        "sessionKey": session_key,
        "deliver": False,
        "idempotencyKey": idempotency_key or str(uuid.uuid4()),
    }
    if attachments:
        params["attachments"] = attachments
    return params


async def send_agent(
    connection,
    message: str,
    session_key: str,
    attachments: Optional[list] = None,
) -> Any:
    """
    向服务端发送聊天消息（agent 方法），等待多段响应（accepted -> ok/error）的终态 payload。
    """
    params = build_agent_params(message, session_key, attachments)
    gateway_logger.info(
        f"local_to_server: 发送 agent sessionKey={session_key} "
        f"attachments={len(attachments or [])}"
    )
    return await connection.request(METHOD_AGENT, params)


async def send_session_status(connection, session_key: str) -> Any:
    """向服务端查询会话状态（session_status）。"""
    gateway_logger.debug(f"local_to_server: 发送 session_status sessionKey={session_key}")
    return await connection.request(METHOD_SESSION_STATUS, {"sessionKey": session_key})
