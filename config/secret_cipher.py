"""
桥接服务敏感配置（gateway_token）的本地加密存储。
密钥存于 config_dir/.bridge_key，加密后写入 bridge.json 时带前缀 enc:，读取时解密。
"""
import os

from cryptography.fernet import Fernet, InvalidToken

from utils.logger import logger

# 加密值前缀，用于区分明文（手工填写的配置）与密文
ENCRYPTED_PREFIX = "enc:"


def key_file_path(config_dir: str) -> str:
    """密钥文件路径：config_dir/.bridge_key"""
    return os.path.join(config_dir, ".bridge_key")


def _get_fernet(config_dir: str, create: bool = True):
    """读取或创建密钥文件，返回 Fernet 实例；不可用时返回 None。"""
    path = key_file_path(config_dir)
    if os.path.isfile(path):
        try:
            with open(path, "rb") as f:
                return Fernet(f.read().strip())
        except (OSError, ValueError) as e:
            logger.warning(f"读取密钥文件失败，将明文处理: {e}")
            return None
    if not create:
        return None
    try:
        key = Fernet.generate_key()
        os.makedirs(config_dir, exist_ok=True)
        with open(path, "wb") as f:
            f.write(key)
        try:
            os.chmod(path, 0o600)
        except OSError:
            pass
        return Fernet(key)
    except OSError as e:
        logger.warning(f"创建密钥文件失败，将明文处理: {e}")
        return None


def is_encrypted(value) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)


def encrypt_if_available(plain: str, config_dir: str) -> str:
    """
    加密后返回 enc: + token；密钥不可用时返回原文。
    空字符串直接返回空字符串。
    """
    if not plain or not isinstance(plain, str):
        return plain or ""
    f = _get_fernet(config_dir)
    if f is None:
        return plain
    return ENCRYPTED_PREFIX + f.encrypt(plain.encode("utf-8")).decode("ascii")


def decrypt_if_encrypted(value: str, config_dir: str) -> str:
    """
    若为 enc: 开头的密文则解密后返回；否则返回原文。
    密钥缺失或密文损坏时返回空字符串，避免把密文当作 token 发给 Gateway。
    """
    if not value or not isinstance(value, str):
        return value or ""
    if not is_encrypted(value):
        return value
    f = _get_fernet(config_dir, create=False)
    if f is None:
        logger.warning("配置中的 token 已加密，但找不到密钥文件，忽略该值")
        return ""
    try:
        return f.decrypt(value[len(ENCRYPTED_PREFIX):].encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError) as e:
        logger.warning(f"解密 token 失败，忽略该值: {e!r}")
        return ""
