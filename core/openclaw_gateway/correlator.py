"""
请求/响应关联：在单条 WebSocket 上复用多个并发请求。
- 每个请求分配新 id，登记 PendingRequest（含截止时间），再把请求帧交给发送函数。
- 收到 res 帧按 id 查找；找不到则丢弃（已超时或重复响应）。
- payload.status == "accepted" 为中间确认，仅把请求推进到 ACCEPTED，继续等待终态。
- 终态：无 error 且 ok 为真（且 status 不是 error）才算成功，否则以错误文本失败。
- 连接断开时 fail_all() 立即让所有未完成请求失败，不等超时。
所有方法只在连接所属的事件循环中调用，无需加锁。
"""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from utils.logger import gateway_logger
from .errors import GatewayConnectionLost, GatewayRequestError, GatewayTimeoutError
from .protocol import (
    STATUS_ERROR,
    build_request_frame,
    error_message,
    is_accepted,
    parse_response_frame,
    response_status,
)
from . import server_to_local as stl

DEFAULT_REQUEST_TIMEOUT = 60.0


class RequestPhase(str, Enum):
    SENT = "sent"
    ACCEPTED = "accepted"
    DONE = "done"


@dataclass
class PendingRequest:
    id: str
    method: str
    future: asyncio.Future
    deadline: float
    phase: RequestPhase = RequestPhase.SENT
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class RequestCorrelator:
    """
    send_frame(frame) 负责把帧交给传输层（同步，不等待写出）；失败时应抛异常。
    send(method, params) 返回终态成功响应的 payload，失败抛 GatewayError 子类。
    """

    def __init__(self, send_frame: Callable[[dict], None], timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self._send_frame = send_frame
        self._timeout = timeout
        self._pending: dict[str, PendingRequest] = {}
        self._closed_error: Optional[Exception] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def get(self, req_id: str) -> Optional[PendingRequest]:
        return self._pending.get(req_id)

    async def send(self, method: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        if self._closed_error is not None:
            raise GatewayConnectionLost(str(self._closed_error))
        loop = asyncio.get_running_loop()
        req_id, frame = build_request_frame(method, params or {})
        while req_id in self._pending:
            req_id, frame = build_request_frame(method, params or {})
        timeout = self._timeout if timeout is None else timeout
        pending = PendingRequest(
            id=req_id,
            method=method,
            future=loop.create_future(),
            deadline=time.monotonic() + timeout,
        )
        pending.timer = loop.call_later(timeout, self._expire, req_id)
        self._pending[req_id] = pending
        try:
            self._send_frame(frame)
        except Exception:
            self._discard(req_id)
            raise
        gateway_logger.info(f"Gateway 请求: method={method} req_id={req_id}")
        try:
            return await pending.future
        finally:
            # 调用方被取消时同样清理，避免残留
            self._discard(req_id)

    def handle_response(self, data: dict) -> bool:
        """处理 res 帧。返回 True 表示帧对应某个未完成请求。"""
        rid, ok, payload, error = parse_response_frame(data)
        if rid is None:
            return False
        pending = self._pending.get(rid)
        if pending is None or pending.phase is RequestPhase.DONE:
            gateway_logger.debug(f"Gateway 响应无对应请求，已丢弃: req_id={rid}")
            return False
        if error is None and is_accepted(payload):
            pending.phase = RequestPhase.ACCEPTED
            gateway_logger.debug(f"Gateway {pending.method} 已接受，等待完成: req_id={rid}")
            return True
        succeeded = error is None and bool(ok) and response_status(payload) != STATUS_ERROR
        # 先结算再记日志，日志异常不影响调用方拿到结果
        if succeeded:
            self._settle(rid, result=payload if payload is not None else {})
            gateway_logger.info(f"Gateway 响应: req_id={rid} method={pending.method} ok")
        else:
            code = error.get("code") if isinstance(error, dict) else None
            self._settle(rid, exc=GatewayRequestError(error_message(error, payload), code=code))
        stl.on_response(pending.method, succeeded, payload, error)
        return True

    def fail_all(self, exc: Exception) -> int:
        """连接关闭：让所有未完成请求立即失败，此后 send() 直接失败。返回失败的请求数。"""
        self._closed_error = exc
        ids = list(self._pending)
        for rid in ids:
            self._settle(rid, exc=exc)
        if ids:
            gateway_logger.info(f"连接关闭，{len(ids)} 个未完成请求已失败")
        return len(ids)

    def _expire(self, req_id: str) -> None:
        pending = self._pending.get(req_id)
        if pending is None:
            return
        gateway_logger.warning(f"Gateway 请求超时: method={pending.method} req_id={req_id}")
        self._settle(req_id, exc=GatewayTimeoutError(f"请求超时: {pending.method}"))

    def _settle(self, req_id: str, result: Any = None, exc: Optional[Exception] = None) -> None:
        pending = self._pending.pop(req_id, None)
        if pending is None:
            return
        pending.phase = RequestPhase.DONE
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return
        if exc is not None:
            pending.future.set_exception(exc)
        else:
            pending.future.set_result(result)

    def _discard(self, req_id: str) -> None:
        pending = self._pending.pop(req_id, None)
        if pending is not None:
            pending.phase = RequestPhase.DONE
            if pending.timer is not None:
                pending.timer.cancel()
