"""对外 API 服务模块。

提供简化的函数接口供上层应用（UI、脚本）调用。
"""

from typing import Any, Dict, Iterator, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Chat, Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.chat_store import KeyValueChatStore
from chat_core.infrastructure.storage.kv_store import JsonFileKeyValueStore
from chat_core.providers import create_transport
from chat_core.services.chat_service import ChatService


_service: Optional[ChatService] = None


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例）。"""
    global _service
    if _service is None:
        store = KeyValueChatStore(JsonFileKeyValueStore(root=settings.storage_root))
        _service = ChatService(store=store, transport=create_transport())
    return _service


def stream_chat(user_input: str, chat_id: Optional[str] = None) -> Iterator[Chat]:
    """发送一条消息并逐个产出会话快照。

    Args:
        user_input: 用户输入内容
        chat_id: 会话ID（可选，不提供则创建新会话）

    Yields:
        每次状态转换后已持久化的会话快照
    """
    service = get_default_service()
    if not chat_id:
        chat_id = service.create_chat(user_input).id
    service.last_active_chat_id = chat_id
    try:
        yield from service.send_message(chat_id, user_input)
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "chat_id": chat_id,
            "error": str(e),
        }})
        raise


def run_chat(user_input: str, chat_id: Optional[str] = None) -> Dict[str, Any]:
    """发送一条消息并等待回答完成。

    Returns:
        包含会话ID、标题、用户消息与助手消息的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    last: Optional[Chat] = None
    for snapshot in stream_chat(user_input, chat_id):
        last = snapshot
    if last is None:
        raise BusinessError(code="EMPTY_STREAM", message="Chat stream produced no snapshot", http_status=500)
    user_msg = next(m for m in reversed(last.messages) if m.is_user)
    assistant_msg = last.messages[-1]
    return {
        "chat_id": last.id,
        "title": last.title,
        "user_message": _message_dict(user_msg),
        "assistant_message": _message_dict(assistant_msg),
    }


def list_chats() -> list[Dict[str, Any]]:
    """列出所有会话，置顶的在前，其余按创建时间倒序。

    Returns:
        会话列表，每项包含 id, title, pinned, created_at, message_count
    """
    chats = get_default_service().list_chats()
    chats.sort(key=lambda c: (not c.pinned, -c.created_at.timestamp()))
    return [
        {
            "id": c.id,
            "title": c.title,
            "pinned": c.pinned,
            "created_at": c.created_at.isoformat(),
            "message_count": len(c.messages),
        }
        for c in chats
    ]


def _message_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "text": message.text,
        "is_error": message.is_error,
        "timestamp": message.timestamp.isoformat(),
    }
