"""
桥接服务配置管理：
- 默认值 -> config/bridge.json（gateway_token 加密存储）-> 环境变量 -> 命令行参数
- bridge.json 不存在时全部取默认值与环境变量，与原有仅靠环境变量的部署方式兼容
"""
import json
import os
from typing import Mapping, Optional

from config.secret_cipher import decrypt_if_encrypted, encrypt_if_available
from utils.logger import logger

# 存于 config/bridge.json 的键
BRIDGE_KEYS = (
    "gateway_url", "gateway_token", "bridge_port", "bridge_host",
    "device_key_path", "request_timeout", "handshake_timeout",
    "log_level", "log_dir",
)
# 上述键中需加密存储的
SENSITIVE_KEYS = ("gateway_token",)
INT_KEYS = ("bridge_port", "request_timeout", "handshake_timeout")

# 配置键 -> 环境变量
ENV_KEYS = {
    "gateway_url": "OPENCLAW_GATEWAY_URL",
    "gateway_token": "OPENCLAW_GATEWAY_TOKEN",
    "bridge_port": "BRIDGE_PORT",
    "bridge_host": "BRIDGE_HOST",
    "device_key_path": "DEVICE_KEY_PATH",
    "log_level": "BRIDGE_LOG_LEVEL",
}

# 命令行参数属性名 -> 配置键
ARG_KEYS = {
    "port": "bridge_port",
    "host": "bridge_host",
    "gateway": "gateway_url",
    "log_level": "log_level",
}


def _coerce_int(key: str, value):
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"配置项 {key} 不是有效整数，已忽略: {value!r}")
        return None


class Settings:
    """桥接服务全局配置：默认值 + config/bridge.json + 环境变量 + 命令行。"""

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        _root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        self._root = _root
        if config_file is None:
            config_file = os.path.join(_root, "config", "bridge.json")
        self.config_file = os.path.normpath(os.path.abspath(config_file))
        self._config_dir = os.path.dirname(self.config_file)
        self.config = self._load_default()
        self.load(environ)

    def _load_default(self):
        return {
            "gateway_url": "ws://127.0.0.1:18789",
            "gateway_token": "",
            "bridge_port": 5001,
            "bridge_host": "0.0.0.0",
            "device_key_path": "./device-key.json",
            "request_timeout": 60,
            "handshake_timeout": 15,
            "log_level": "info",
            "log_dir": "logs",
        }

    def _set_value(self, key: str, value):
        if key in INT_KEYS:
            value = _coerce_int(key, value)
            if value is None:
                return
        self.config[key] = value

    def load(self, environ: Optional[Mapping[str, str]] = None) -> bool:
        """加载：默认 -> config/bridge.json -> 环境变量。返回 bridge.json 是否成功读取。"""
        self.config.update(self._load_default())
        file_loaded = False
        if os.path.isfile(self.config_file):
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("bridge.json 顶层必须是对象")
                for k in BRIDGE_KEYS:
                    if k not in data:
                        continue
                    raw = data[k]
                    if k in SENSITIVE_KEYS and isinstance(raw, str):
                        raw = decrypt_if_encrypted(raw, self._config_dir)
                    self._set_value(k, raw)
                file_loaded = True
            except (OSError, ValueError) as e:
                logger.error(f"加载 {self.config_file} 失败: {e}")
        self.apply_env(os.environ if environ is None else environ)
        return file_loaded

    def apply_env(self, environ: Mapping[str, str]):
        for key, env_name in ENV_KEYS.items():
            value = environ.get(env_name)
            if value is None or value == "":
                continue
            self._set_value(key, value)

    def apply_args(self, args):
        """命令行参数优先级最高；值为 None 的参数视为未指定。"""
        for attr, key in ARG_KEYS.items():
            value = getattr(args, attr, None)
            if value is not None:
                self._set_value(key, value)

    def save(self):
        """写回 config/bridge.json；gateway_token 加密后写入。"""
        os.makedirs(self._config_dir, exist_ok=True)
        data = {}
        for k in BRIDGE_KEYS:
            v = self.config.get(k)
            if k in SENSITIVE_KEYS and isinstance(v, str) and v:
                data[k] = encrypt_if_available(v, self._config_dir)
            else:
                data[k] = v
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"保存 {self.config_file} 失败: {e}")
            raise

    def resolve_path(self, value: str) -> str:
        """相对路径按当前工作目录解析（与 ./device-key.json 的默认语义一致）。"""
        return os.path.abspath(os.path.expanduser(value))

    def summary(self) -> dict:
        """用于日志输出的配置快照，token 打码。"""
        snapshot = dict(self.config)
        if snapshot.get("gateway_token"):
            snapshot["gateway_token"] = "***"
        return snapshot

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
