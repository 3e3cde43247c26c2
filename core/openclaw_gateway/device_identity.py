"""
设备身份：Ed25519 密钥对 + 由公钥派生的 deviceId。
- deviceId = sha256(公钥原始 32 字节) 的十六进制前 32 位，密钥对与 deviceId 总是一起生成。
- 持久化为 JSON {privateKey: base64, publicKey: base64, deviceId: hex}，只存原始字节，
  签名时才转换为 cryptography 的密钥对象。
- 读取失败（不存在、损坏、公私钥不匹配）时重新生成；保存失败只记警告，本进程内身份仍可用。
"""
import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from utils.logger import gateway_logger

KEY_SIZE = 32
DEVICE_ID_LENGTH = 32


def derive_device_id(public_key: bytes) -> str:
    return hashlib.sha256(public_key).hexdigest()[:DEVICE_ID_LENGTH]


def b64url(data: bytes) -> str:
    """URL 安全 base64，去掉末尾 =（Gateway 线上格式）。"""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    public_key: bytes
    private_key: bytes

    @classmethod
    def generate(cls) -> "DeviceIdentity":
        key = Ed25519PrivateKey.generate()
        private_raw = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        public_raw = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return cls(
            device_id=derive_device_id(public_raw),
            public_key=public_raw,
            private_key=private_raw,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceIdentity":
        """从持久化记录恢复；字段缺失、长度不对或公私钥不匹配时抛 ValueError。"""
        if not isinstance(data, dict):
            raise ValueError("设备密钥记录不是对象")
        try:
            private_raw = base64.b64decode(data["privateKey"], validate=True)
            public_raw = base64.b64decode(data["publicKey"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise ValueError(f"设备密钥记录无效: {e}") from e
        if len(private_raw) != KEY_SIZE or len(public_raw) != KEY_SIZE:
            raise ValueError("设备密钥长度错误")
        derived_public = Ed25519PrivateKey.from_private_bytes(private_raw).public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        if derived_public != public_raw:
            raise ValueError("公钥与私钥不匹配")
        device_id = derive_device_id(public_raw)
        if data.get("deviceId") != device_id:
            raise ValueError("deviceId 与公钥不一致")
        return cls(device_id=device_id, public_key=public_raw, private_key=private_raw)

    def to_dict(self) -> dict:
        return {
            "privateKey": base64.b64encode(self.private_key).decode("ascii"),
            "publicKey": base64.b64encode(self.public_key).decode("ascii"),
            "deviceId": self.device_id,
        }

    @classmethod
    def load_or_create(cls, path: str) -> "DeviceIdentity":
        """读取 path 处的设备密钥；不存在或无效时生成新的并尽力保存。"""
        if os.path.isfile(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    identity = cls.from_dict(json.load(f))
                gateway_logger.info(f"已加载设备密钥: {identity.device_id[:16]}...")
                return identity
            except (OSError, ValueError) as e:
                # json.JSONDecodeError 为 ValueError 子类
                gateway_logger.warning(f"读取设备密钥失败，将重新生成: {e}")
        identity = cls.generate()
        try:
            identity.save(path)
            gateway_logger.info(f"已生成新设备密钥: {identity.device_id[:16]}...")
        except OSError as e:
            gateway_logger.warning(f"保存设备密钥失败（本次运行仍可使用）: {e}")
        return identity

    def save(self, path: str) -> None:
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f)
        try:
            os.chmod(path, 0o600)
        except OSError as e:
            gateway_logger.debug(f"设置设备密钥文件权限失败: {e}")

    def public_key_b64url(self) -> str:
        return b64url(self.public_key)

    def sign(self, data: bytes) -> bytes:
        """Ed25519 签名（确定性，不做额外哈希）。"""
        return Ed25519PrivateKey.from_private_bytes(self.private_key).sign(data)

    def sign_b64url(self, data: bytes) -> str:
        return b64url(self.sign(data))
