"""会话编排核心模块。

ChatService 把一次用户发言转换为一串一致且已持久化的会话快照：

1. Load：按 id 读取会话，不存在则抛 ChatNotFound，无副作用。
2. AppendUser：追加用户消息（首条消息同时推导标题），持久化后产出快照。
3. OpenPlaceholder：追加空文本、is_streaming=True 的助手占位消息，持久化后产出快照。
4. Accumulate：每收到一个增量就拼接到占位消息，持久化后产出快照。
5. Finalize：增量序列正常结束，清除 is_streaming，持久化后产出最终快照。
6. Fail：传输层抛出 TransportError 时追加一条 is_error 消息，持久化并产出快照后再重新抛出。

任何快照在产出之前都已经写回存储；产出的是深拷贝，调用方修改它不会影响后续状态。
"""

import copy
import logging
from typing import Any, Dict, Iterator, List, Optional, Set
from uuid import uuid4

from chat_core.domain.exceptions import BusinessError, ChatBusy, ChatNotFound, StorageCorrupt, TransportError, ValidationError
from chat_core.domain.models import Chat, Message, derive_title, new_chat_id
from chat_core.domain.store import ChatStore
from chat_core.infrastructure.logging.logger import log_event, logger
from chat_core.providers.base import StreamingTransport


class ChatService:
    def __init__(self, store: ChatStore, transport: StreamingTransport):
        self._store = store
        self._transport = transport
        # 正在 send_message 的会话 id
        self._sending: Set[str] = set()

    # ---- 查询 ----

    def list_chats(self) -> List[Chat]:
        try:
            return self._store.list()
        except StorageCorrupt as e:
            logger.warning("Chat storage is corrupt, treating as empty", extra={"extra": {"error": e.message}})
            return []

    def get_chat(self, chat_id: str) -> Chat:
        return self._load(chat_id)

    @property
    def last_active_chat_id(self) -> Optional[str]:
        return self._store.get_last_active_chat_id()

    @last_active_chat_id.setter
    def last_active_chat_id(self, chat_id: Optional[str]) -> None:
        self._store.set_last_active_chat_id(chat_id)

    # ---- 会话管理 ----

    def create_chat(self, first_message: Optional[str] = None) -> Chat:
        """创建新会话；给出首条消息时用它推导标题，否则为 "New Chat"。"""

        chat = Chat(id=new_chat_id(), title=derive_title(first_message))
        self._store.put(chat)
        logger.info("Created new chat", extra={"extra": {"chat_id": chat.id}})
        return copy.deepcopy(chat)

    def toggle_pin(self, chat_id: str) -> Chat:
        chat = self._load(chat_id)
        chat.pinned = not chat.pinned
        return self._persist(chat)

    def rename_chat(self, chat_id: str, new_title: str) -> Chat:
        if not new_title or not new_title.strip():
            raise ValidationError(code="EMPTY_TITLE", message="Chat title must not be empty", chat_id=chat_id)
        chat = self._load(chat_id)
        chat.title = new_title
        return self._persist(chat)

    def delete_chat(self, chat_id: str) -> None:
        self._store.delete(chat_id)
        if self._store.get_last_active_chat_id() == chat_id:
            self._store.set_last_active_chat_id(None)
        logger.info("Deleted chat", extra={"extra": {"chat_id": chat_id}})

    def clear_all_chats(self) -> None:
        self._store.clear()
        self._store.set_last_active_chat_id(None)
        logger.info("Cleared all chats")

    def cancel_stream(self) -> None:
        """中止当前流；已累积的部分回答会照常定稿并保存。"""

        self._transport.cancel()

    # ---- 发送消息 ----

    def send_message(self, chat_id: str, text: str) -> Iterator[Chat]:
        """发送一条用户消息，惰性产出每次状态转换后的会话快照。

        同一会话上一次发送尚未结束时再次调用会抛出 ChatBusy。
        传输失败时，先产出包含错误消息的快照，再抛出 TransportError。
        """

        if chat_id in self._sending:
            raise ChatBusy(chat_id)
        chat = self._load(chat_id)
        self._sending.add(chat_id)
        try:
            yield from self._run_send(chat, text)
        finally:
            self._sending.discard(chat_id)

    def _run_send(self, chat: Chat, text: str) -> Iterator[Chat]:
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "chat_id": chat.id,
            "provider": getattr(self._transport, "name", None),
        }

        # AppendUser
        # 上次发送若被提前中断，清掉残留的流式标记
        for msg in chat.messages:
            msg.is_streaming = False
        is_first = not chat.messages
        chat.messages.append(Message.user(text))
        if is_first:
            chat.title = derive_title(text)
        yield self._persist(chat)

        # 占位消息不进入发给远端的历史
        history = chat.history()

        # OpenPlaceholder
        placeholder = Message.assistant_placeholder()
        chat.messages.append(placeholder)
        delta_count = 0
        try:
            yield self._persist(chat)

            log_event(logging.INFO, "Opening completion stream", log_ctx, history_size=len(history))
            deltas = self._transport.stream_completion(history)
            try:
                # Accumulate
                for delta in deltas:
                    placeholder.text += delta
                    delta_count += 1
                    yield self._persist(chat)
            except TransportError as e:
                # Fail：保留部分回答，追加错误消息
                # 流已结束，清除 is_streaming 以保证会话中不残留流式消息
                placeholder.is_streaming = False
                chat.messages.append(Message.error())
                log_event(
                    logging.ERROR,
                    "Completion stream failed",
                    log_ctx,
                    code=e.code,
                    error=e.message,
                    http_status=e.http_status,
                    deltas=delta_count,
                )
                yield self._persist(chat)
                raise
            finally:
                # 调用方提前停止消费时也要释放底层连接
                close = getattr(deltas, "close", None)
                if close is not None:
                    close()

            # Finalize
            placeholder.is_streaming = False
            log_event(
                logging.INFO,
                "Completion stream finished",
                log_ctx,
                deltas=delta_count,
                chars=len(placeholder.text),
                cancelled=bool(getattr(self._transport, "cancelled", False)),
            )
            yield self._persist(chat)
        except GeneratorExit:
            # 调用方提前关闭：按取消处理，保存已累积的部分回答
            self._abandon(chat, placeholder, log_ctx, delta_count)
            raise

    # ---- 内部工具 ----

    def _abandon(self, chat: Chat, placeholder: Message, log_ctx: Dict[str, Any], delta_count: int) -> None:
        if not placeholder.is_streaming:
            return
        placeholder.is_streaming = False
        log_event(logging.INFO, "Snapshot stream closed early", log_ctx, deltas=delta_count)
        try:
            self._store.put(chat)
        except BusinessError as e:
            log_event(logging.WARNING, "Failed to save abandoned chat", log_ctx, error=e.message)

    def _load(self, chat_id: str) -> Chat:
        try:
            chat = self._store.get(chat_id)
        except StorageCorrupt as e:
            logger.warning("Chat storage is corrupt, treating as empty", extra={"extra": {"error": e.message}})
            chat = None
        if chat is None:
            raise ChatNotFound(chat_id)
        return chat

    def _persist(self, chat: Chat) -> Chat:
        self._store.put(chat)
        return copy.deepcopy(chat)
