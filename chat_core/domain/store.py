from typing import List, Optional, Protocol

from .models import Chat


class KeyValueStore(Protocol):
    """简单的持久化键值介质，值统一为字符串。"""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class ChatStore(Protocol):
    """会话记录集的存储抽象。

    put 是唯一的持久化原语：创建与更新都按 id upsert。
    """

    def list(self) -> List[Chat]:
        ...

    def get(self, chat_id: str) -> Optional[Chat]:
        ...

    def put(self, chat: Chat) -> None:
        ...

    def delete(self, chat_id: str) -> None:
        ...

    def clear(self) -> None:
        ...

    def get_last_active_chat_id(self) -> Optional[str]:
        ...

    def set_last_active_chat_id(self, chat_id: Optional[str]) -> None:
        ...
