"""
本地 HTTP 入口：接收 LINE webhook 服务转发的已归一化消息。

POST /message（/ 为别名），body {text, userId, sourceType?, groupId?, attachments?}
- 200 {text, channelData[, mediaUrl]}
- 400 JSON 无效或字段类型不对；404 未知路径；405 非 POST；500 {error} agent 调用失败
- CORS 全放开，OPTIONS 一律 204
HTTP 响应在 agent 调用结束（成功、失败或超时）后才返回。
"""
import asyncio
import json

from aiohttp import web

from utils.logger import logger
from core.openclaw_gateway.errors import GatewayError

MESSAGE_PATHS = ("/message", "/")
BODY_READ_TIMEOUT = 30.0
# 附件以内联数据转发，放宽默认 1MB 上限
CLIENT_MAX_SIZE = 20 * 1024 * 1024

ROUTER_KEY = web.AppKey("router", object)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _json_error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status, headers=CORS_HEADERS)


def parse_message_payload(payload) -> dict:
    """校验并补全入站字段；类型不对时抛 ValueError。"""
    if not isinstance(payload, dict):
        raise ValueError("Body must be a JSON object")
    text = payload.get("text")
    if text is None:
        text = ""
    if not isinstance(text, str):
        raise ValueError("text must be a string")
    user_id = payload.get("userId") or "unknown"
    if not isinstance(user_id, str):
        raise ValueError("userId must be a string")
    group_id = payload.get("groupId") or None
    if group_id is not None and not isinstance(group_id, str):
        raise ValueError("groupId must be a string")
    attachments = payload.get("attachments") or None
    if attachments is not None and not isinstance(attachments, list):
        raise ValueError("attachments must be a list")
    return {
        "text": text,
        "userId": user_id,
        "sourceType": payload.get("sourceType") or "user",
        "groupId": group_id,
        "attachments": attachments,
    }


async def handle_request(request: web.Request) -> web.Response:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=CORS_HEADERS)
    if request.method != "POST":
        return _json_error(405, "Method not allowed")
    if request.path not in MESSAGE_PATHS:
        return _json_error(404, "Not found")

    try:
        body = await asyncio.wait_for(request.read(), timeout=BODY_READ_TIMEOUT)
    except asyncio.TimeoutError:
        return _json_error(408, "Request body timeout")
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        # json.loads 直接接收 bytes；非 UTF-8 与语法错误同样视为无效 JSON
        return _json_error(400, "Invalid JSON")
    try:
        message = parse_message_payload(data)
    except ValueError as e:
        return _json_error(400, str(e))

    user_id = message["userId"]
    logger.info(
        f"[Bridge] 收到 {message['sourceType']} 消息 user={user_id}: \"{message['text'][:50]}\""
    )
    router = request.app[ROUTER_KEY]
    try:
        reply = await router.handle(
            message["text"],
            user_id,
            group_id=message["groupId"],
            attachments=message["attachments"],
        )
    except GatewayError as e:
        logger.error(f"[Bridge] Agent 调用失败: {e}")
        return _json_error(500, str(e) or type(e).__name__)
    except Exception as e:
        logger.exception(f"[Bridge] 处理消息异常: {e}")
        return _json_error(500, str(e) or type(e).__name__)
    return web.json_response(reply, headers=CORS_HEADERS)


def create_app(router) -> web.Application:
    """构建 aiohttp 应用；router 为 CommandRouter（或具备相同 handle 接口的对象）。"""
    app = web.Application(client_max_size=CLIENT_MAX_SIZE)
    app[ROUTER_KEY] = router
    # 方法与路径由 handle_request 自行判定，以保证 405 优先于 404
    app.router.add_route("*", "/{tail:.*}", handle_request)
    return app
