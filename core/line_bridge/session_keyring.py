"""
会话 key 派生与 epoch 管理。

key 格式：agent:main:line-bridge:{dm:<userId> | group:<groupId>}[:v<epoch>]
- 私聊与群组使用不同命名空间，群组 key 不会与同 id 的私聊 key 冲突。
- epoch 按发消息的用户记录，默认 0，此时不加 :v 后缀，与旧版会话 key 保持一致；
  /new、/clear 只使该用户的 epoch +1，不影响其他用户（包括同一群组的其他成员）。
- epoch 只保存在进程内存中，重启归零。对话历史由 Gateway 按会话 key 持久保存，
  这里只是本地视图，因此不做持久化。
"""
import threading
from typing import Optional

from utils.logger import logger

SESSION_KEY_PREFIX = "agent:main:line-bridge"


class SessionKeyring:
    """会话 key 与 epoch。同一用户的 epoch 读-改-写加锁串行，并发 /new 不会得到相同 epoch。"""

    def __init__(self, prefix: str = SESSION_KEY_PREFIX):
        self._prefix = prefix
        self._epochs: dict[str, int] = {}
        self._lock = threading.Lock()

    def key_for(self, user_id: str, group_id: Optional[str] = None) -> str:
        """基础会话 key（不含 epoch 后缀）。"""
        if group_id:
            return f"{self._prefix}:group:{group_id}"
        return f"{self._prefix}:dm:{user_id}"

    def epoch_of(self, user_id: str) -> int:
        with self._lock:
            return self._epochs.get(user_id, 0)

    def bump(self, user_id: str) -> int:
        """该用户 epoch +1 并返回新值。"""
        with self._lock:
            epoch = self._epochs.get(user_id, 0) + 1
            self._epochs[user_id] = epoch
        logger.info(f"会话 epoch 更新: user={user_id} -> v{epoch}")
        return epoch

    def resolve(self, user_id: str, group_id: Optional[str] = None) -> str:
        """当前会话 key：该用户 epoch > 0 时在基础 key 后附加 :v<epoch>。"""
        base = self.key_for(user_id, group_id)
        epoch = self.epoch_of(user_id)
        if epoch > 0:
            return f"{base}:v{epoch}"
        return base
