"""
Gateway 调用异常。
调用方（HTTP 入口）统一捕获 GatewayError，并以 500 + error 文本返回。
"""


class GatewayError(Exception):
    """Gateway 相关错误基类。"""


class GatewayConnectionError(GatewayError):
    """传输层失败：连接被拒绝/重置、握手超时等。"""


class GatewayConnectionLost(GatewayConnectionError):
    """请求未完成时连接已关闭。"""


class GatewayAuthError(GatewayError):
    """connect 握手被服务端拒绝。"""


class GatewayTimeoutError(GatewayError):
    """请求在截止时间内未收到终态响应。"""


class GatewayRequestError(GatewayError):
    """终态响应为失败（ok 为假、带 error 或 status=error）。"""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class GatewayBusyError(GatewayError):
    """发送队列已满。"""
