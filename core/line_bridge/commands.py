"""
LINE 消息路由：本地命令在此直接回复，其余消息转发给 Gateway agent。

命令只按「去空白 + 小写」后的整串精确匹配（/new foo 不算 /new）：
- /help：固定说明，不经过 Gateway
- /new、/clear：epoch +1，开启新对话，不经过 Gateway
- /status、/model、/models：不拦截，由远端 agent 回答
"""
from typing import Optional

from utils.logger import logger

COMMAND_HELP = "/help"
COMMAND_NEW = "/new"
COMMAND_CLEAR = "/clear"

# 与 Rich Menu 六个按钮一致
HELP_TEXT = "\n".join([
    "📋 可用指令：",
    "/new - 開始新的對話",
    "/clear - 清除對話紀錄（同 /new）",
    "/status - 查看系統狀態",
    "/model - 查看目前使用的模型",
    "/models - 查看可用的模型列表",
    "/help - 顯示本說明",
])


def normalize_command(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def describe_attachments(attachments: list) -> str:
    """
    文本为空但带附件时的占位消息（Gateway 要求 message 非空）。
    类型取 attachment.type，缺省时取 mimeType 的主类型。
    """
    kinds = []
    for item in attachments:
        kind = None
        if isinstance(item, dict):
            kind = item.get("type") or (item.get("mimeType") or "").split("/")[0] or None
        kind = kind or "file"
        if kind not in kinds:
            kinds.append(kind)
    return f"[使用者傳送了附件：{', '.join(kinds)}]"


class CommandRouter:
    """把一条入站消息分类为本地命令或 agent 调用，返回 {text, channelData[, mediaUrl]}。"""

    def __init__(self, gateway_client, keyring):
        self.gateway_client = gateway_client
        self.keyring = keyring

    async def handle(
        self,
        text: str,
        user_id: str,
        group_id: Optional[str] = None,
        attachments: Optional[list] = None,
    ) -> dict:
        command = normalize_command(text)
        if command == COMMAND_HELP:
            logger.info(f"本地命令 /help: user={user_id}")
            return {"text": HELP_TEXT, "channelData": {}}
        if command in (COMMAND_NEW, COMMAND_CLEAR):
            epoch = self.keyring.bump(user_id)
            logger.info(f"本地命令 {command}: user={user_id} epoch={epoch}")
            return {
                "text": f"🆕 已開始新的對話（第 {epoch} 段）。",
                "channelData": {},
            }

        message = text or ""
        if not message.strip() and attachments:
            message = describe_attachments(attachments)
        session_key = self.keyring.resolve(user_id, group_id)
        reply = await self.gateway_client.call_agent(message, session_key, attachments or None)
        response = {
            "text": reply.get("text") or "",
            "channelData": reply.get("channelData") or {},
        }
        if reply.get("mediaUrl"):
            response["mediaUrl"] = reply["mediaUrl"]
        return response
