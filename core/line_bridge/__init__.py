"""
LINE 桥接：会话 key、命令路由与本地 HTTP 入口。
"""
from .commands import HELP_TEXT, CommandRouter
from .ingress import create_app
from .session_keyring import SessionKeyring

__all__ = ["CommandRouter", "HELP_TEXT", "SessionKeyring", "create_app"]
