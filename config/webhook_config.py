"""
LINE webhook 管理面板配置（UCI 文件 /etc/config/line_webhook）的读取与校验。

文件格式：
    config line_webhook 'main'
        option port '5000'
        option processor 'openclaw'

管理面板负责写入，这里只解析与校验，字段含义与面板表单一致。
"""
import ipaddress
import re
import shlex
from typing import Optional

from utils.logger import logger

DEFAULT_UCI_PATH = "/etc/config/line_webhook"
SECTION_TYPE = "line_webhook"

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")
PROCESSORS = ("echo", "local_llm", "remote_llm", "moltbot", "openclaw")
TIMEOUT_KEYS = ("local_llm_timeout", "remote_api_timeout", "moltbot_timeout", "openclaw_timeout")

GRAFANA_USER_ID_RE = re.compile(r"^U[a-f0-9]{32}$")
# 与管理面板 uinteger 一致：仅 ASCII 数字
UINTEGER_RE = re.compile(r"^[0-9]+$")

DEFAULTS = {
    "enabled": "0",
    "port": "5000",
    "bind_address": "0.0.0.0",
    "log_level": "info",
    "use_tls": "0",
    "tls_cert": "/etc/ssl/line_webhook/server.crt",
    "tls_key": "/etc/ssl/line_webhook/server.key",
    "access_token": "",
    "channel_secret": "",
    "processor": "echo",
    "grafana_user_id": "",
    "grafana_secret": "",
}


def validate_grafana_user_id(value: Optional[str]) -> bool:
    """空值合法（选填）；非空时必须是 U + 32 位小写十六进制。"""
    if not value:
        return True
    return bool(GRAFANA_USER_ID_RE.fullmatch(value))


def _is_flag_on(value) -> bool:
    return str(value).strip() in ("1", "true", "yes", "on")


class WebhookConfig(dict):
    """一个 line_webhook section 的键值，缺省项取面板默认值。"""

    def __init__(self, values: Optional[dict] = None):
        super().__init__(DEFAULTS)
        if values:
            self.update(values)

    @property
    def enabled(self) -> bool:
        return _is_flag_on(self.get("enabled"))

    @property
    def use_tls(self) -> bool:
        return _is_flag_on(self.get("use_tls"))

    @classmethod
    def parse(cls, text: str) -> "WebhookConfig":
        """解析 UCI 文本，取第一个 line_webhook section；其他 section 忽略。"""
        values = {}
        in_section = False
        found = False
        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            try:
                tokens = shlex.split(line)
            except ValueError as e:
                logger.warning(f"UCI 第 {lineno} 行无法解析，已跳过: {e}")
                continue
            keyword = tokens[0]
            if keyword == "config":
                if found and in_section:
                    break
                in_section = len(tokens) > 1 and tokens[1] == SECTION_TYPE
                found = found or in_section
            elif keyword in ("option", "list") and in_section and len(tokens) >= 2:
                values[tokens[1]] = tokens[2] if len(tokens) > 2 else ""
        return cls(values)

    @classmethod
    def load(cls, path: str = DEFAULT_UCI_PATH) -> "WebhookConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.parse(f.read())

    def validate(self) -> list:
        """返回错误信息列表；空列表表示合法。"""
        errors = []

        port = str(self.get("port", "")).strip()
        if not UINTEGER_RE.match(port) or not 1 <= int(port) <= 65535:
            errors.append(f"port must be an integer between 1 and 65535: {port!r}")

        bind_address = str(self.get("bind_address", "")).strip()
        try:
            ipaddress.ip_address(bind_address)
        except ValueError:
            errors.append(f"bind_address must be an IP address: {bind_address!r}")

        if self.get("log_level") not in LOG_LEVELS:
            errors.append(f"log_level must be one of {', '.join(LOG_LEVELS)}")

        if self.get("processor") not in PROCESSORS:
            errors.append(f"processor must be one of {', '.join(PROCESSORS)}")

        for key in TIMEOUT_KEYS:
            value = self.get(key)
            if value in (None, ""):
                continue
            if not UINTEGER_RE.match(str(value).strip()):
                errors.append(f"{key} must be a non-negative integer: {value!r}")

        if self.use_tls:
            for key in ("tls_cert", "tls_key"):
                if not self.get(key):
                    errors.append(f"{key} is required when use_tls is enabled")

        if not validate_grafana_user_id(self.get("grafana_user_id")):
            errors.append("grafana_user_id must be 'U' followed by 32 lowercase hex characters")

        return errors
