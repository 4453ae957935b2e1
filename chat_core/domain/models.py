"""会话与消息的数据模型。

本模块定义了存储、传输与编排层共享的标准数据结构：

- Message: 会话中的一轮消息（用户或助手），带流式/错误标记。
- Chat: 一个持久化的会话（有序消息 + 元数据）。
- ChatMessage: 发给远端补全接口的 role/content 历史条目。

另外负责 Chat 与持久化 JSON 记录之间的相互转换，以及记录校验。
持久化记录沿用外部格式的驼峰键名（isUser、createdAt 等）。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4


# 发给远端的消息角色
Role = Literal["user", "assistant"]

DEFAULT_CHAT_TITLE = "New Chat"
TITLE_MAX_LENGTH = 50
TITLE_TRUNCATE_AT = 47
TITLE_ELLIPSIS = "..."

# 传输失败时追加到会话中的用户可读文案
ERROR_MESSAGE_TEXT = "Sorry, I'm having trouble connecting to the AI service. Please try again later."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """不带时区的时间按 UTC 解释。"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_chat_id() -> str:
    return f"c-{uuid4().hex}"


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


def derive_title(text: Optional[str]) -> str:
    """根据首条消息推导会话标题。

    - 无消息：返回 "New Chat"。
    - 长度 <= 50：原样返回。
    - 长度 > 50：取前 47 个字符并追加 "..."。
    """

    if not text:
        return DEFAULT_CHAT_TITLE
    if len(text) > TITLE_MAX_LENGTH:
        return text[:TITLE_TRUNCATE_AT] + TITLE_ELLIPSIS
    return text


@dataclass
class ChatMessage:
    """一条发给远端补全接口的历史消息。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Message:
    """会话中的一轮消息。

    - is_user: 创建后不可变。
    - is_streaming: 仅当助手消息仍在接收增量时为 True。
    - is_error: 表示一次投递失败。
    is_streaming 与 is_error 永远不会同时为 True；用户消息两者均为 False。
    """

    id: str
    text: str
    is_user: bool
    timestamp: datetime = field(default_factory=_utcnow)
    is_streaming: bool = False
    is_error: bool = False

    def __post_init__(self) -> None:
        self.timestamp = _as_utc(self.timestamp)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(id=new_message_id(), text=text, is_user=True)

    @classmethod
    def assistant_placeholder(cls) -> "Message":
        return cls(id=new_message_id(), text="", is_user=False, is_streaming=True)

    @classmethod
    def error(cls, text: str = ERROR_MESSAGE_TEXT) -> "Message":
        return cls(id=new_message_id(), text=text, is_user=False, is_error=True)

    @property
    def role(self) -> Role:
        return "user" if self.is_user else "assistant"


@dataclass
class Chat:
    """一个持久化的会话。

    messages 按创建顺序追加；除当前正在流式输出的那一条消息的文本会原地增长外，
    其余消息一经追加不再修改。任意时刻至多一条消息 is_streaming 为 True。
    """

    id: str
    title: str
    messages: List[Message] = field(default_factory=list)
    pinned: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.created_at = _as_utc(self.created_at)

    def streaming_message(self) -> Optional[Message]:
        for msg in self.messages:
            if msg.is_streaming:
                return msg
        return None

    def history(self) -> List[ChatMessage]:
        """把当前消息序列映射为发给远端的 role/content 列表。"""

        return [ChatMessage(role=m.role, content=m.text) for m in self.messages]


# ---- 持久化记录转换 ----


def _format_instant(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_instant(value: Any) -> datetime:
    # 早期记录使用毫秒时间戳
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"invalid instant: {value!r}")


def message_to_record(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "text": message.text,
        "isUser": message.is_user,
        "timestamp": _format_instant(message.timestamp),
        "isStreaming": message.is_streaming,
        "isError": message.is_error,
    }


def chat_to_record(chat: Chat) -> Dict[str, Any]:
    return {
        "id": chat.id,
        "title": chat.title,
        "messages": [message_to_record(m) for m in chat.messages],
        "pinned": chat.pinned,
        "createdAt": _format_instant(chat.created_at),
    }


def message_from_record(data: Dict[str, Any]) -> Message:
    timestamp = data.get("timestamp")
    return Message(
        # 早期的用户消息没有 id
        id=data.get("id") or new_message_id(),
        text=data["text"],
        is_user=bool(data["isUser"]),
        timestamp=_parse_instant(timestamp) if timestamp is not None else _utcnow(),
        is_streaming=bool(data.get("isStreaming", False)),
        # 旧版本使用 error 字段
        is_error=bool(data.get("isError", data.get("error", False))),
    )


def chat_from_record(data: Dict[str, Any]) -> Chat:
    return Chat(
        id=data["id"],
        title=data["title"],
        messages=[message_from_record(m) for m in data["messages"]],
        pinned=bool(data.get("pinned", False)),
        created_at=_parse_instant(data["createdAt"]) if data.get("createdAt") is not None else _utcnow(),
    )


def record_problem(data: Any) -> Optional[str]:
    """校验一条持久化会话记录，返回问题描述；合法时返回 None。"""

    if not isinstance(data, dict):
        return "record is not an object"
    for key in ("id", "title"):
        value = data.get(key)
        if not isinstance(value, str) or not value:
            return f"{key} must be a non-empty string"
    messages = data.get("messages")
    if not isinstance(messages, list):
        return "messages must be a list"
    for idx, msg in enumerate(messages):
        if not isinstance(msg, dict):
            return f"messages[{idx}] is not an object"
        if not isinstance(msg.get("text"), str):
            return f"messages[{idx}].text must be a string"
        if "id" in msg and not isinstance(msg["id"], str):
            return f"messages[{idx}].id must be a string"
        if not isinstance(msg.get("isUser"), bool):
            return f"messages[{idx}].isUser must be a bool"
    return None
