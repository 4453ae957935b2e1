"""测试会话编排 ChatService。"""

import tempfile
from pathlib import Path

import pytest

from chat_core.domain.exceptions import ApiError, ChatBusy, ChatNotFound, NetworkError, StorageWriteError, ValidationError
from chat_core.domain.models import DEFAULT_CHAT_TITLE, ERROR_MESSAGE_TEXT, Message
from chat_core.infrastructure.storage.chat_store import KeyValueChatStore
from chat_core.infrastructure.storage.kv_store import JsonFileKeyValueStore, MemoryKeyValueStore
from chat_core.services.chat_service import ChatService


class FakeTransport:
    """模拟的流式传输。"""

    name = "fake"

    def __init__(self, deltas=(), error=None, fail_after=None):
        self.deltas = list(deltas)
        self.error = error
        self.fail_after = fail_after
        self.histories = []
        self.cancelled = False

    def stream_completion(self, history):
        self.histories.append([m.to_payload() for m in history])
        self.cancelled = False
        if self.error is not None and self.fail_after is None:
            raise self.error
        for idx, delta in enumerate(self.deltas):
            if self.fail_after is not None and idx == self.fail_after:
                raise self.error
            if self.cancelled:
                return
            yield delta

    def cancel(self):
        self.cancelled = True


def _service(transport=None):
    store = KeyValueChatStore(MemoryKeyValueStore())
    return ChatService(store=store, transport=transport or FakeTransport()), store


def test_create_chat_titles():
    service, store = _service()
    empty = service.create_chat()
    assert empty.title == DEFAULT_CHAT_TITLE
    assert empty.messages == [] and not empty.pinned
    long_text = "Hello there, how are you today friend of mine this is long"
    chat = service.create_chat(long_text)
    assert chat.title == long_text[:47] + "..."
    assert store.get(chat.id) == chat


def test_send_message_snapshot_sequence():
    transport = FakeTransport(["Hel", "lo", "!"])
    service, store = _service(transport)
    chat = service.create_chat()
    snapshots = list(service.send_message(chat.id, "hi"))

    assert len(snapshots) == 2 + 3 + 1
    user_snap, placeholder_snap = snapshots[0], snapshots[1]
    assert [m.is_user for m in user_snap.messages] == [True]
    assert user_snap.title == "hi"
    assert placeholder_snap.messages[-1].text == ""
    assert placeholder_snap.messages[-1].is_streaming
    assert [s.messages[-1].text for s in snapshots[2:5]] == ["Hel", "Hello", "Hello!"]
    assert all(s.messages[-1].is_streaming for s in snapshots[2:5])

    final = snapshots[-1]
    assert final.messages[-1].text == "Hello!"
    assert not final.messages[-1].is_streaming
    assert not final.messages[-1].is_error
    assert store.get(chat.id) == final
    assert transport.histories == [[{"role": "user", "content": "hi"}]]


def test_every_snapshot_is_persisted_before_yield():
    transport = FakeTransport(["a", "b"])
    service, store = _service(transport)
    chat = service.create_chat()
    for snapshot in service.send_message(chat.id, "q"):
        assert store.get(chat.id) == snapshot
        assert sum(1 for m in snapshot.messages if m.is_streaming) <= 1


def test_history_maps_all_prior_messages():
    transport = FakeTransport(["answer"])
    service, _ = _service(transport)
    chat = service.create_chat()
    list(service.send_message(chat.id, "first"))
    list(service.send_message(chat.id, "second"))
    assert transport.histories[-1] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "answer"},
        {"role": "user", "content": "second"},
    ]


def test_title_only_set_from_first_message():
    service, _ = _service(FakeTransport(["ok"]))
    chat = service.create_chat()
    list(service.send_message(chat.id, "first question"))
    final = list(service.send_message(chat.id, "second question"))[-1]
    assert final.title == "first question"


def test_long_first_message_truncates_title():
    service, _ = _service(FakeTransport(["ok"]))
    chat = service.create_chat()
    text = "Hello there, how are you today friend of mine this is long"
    final = list(service.send_message(chat.id, text))[-1]
    assert final.title == text[:47] + "..."


def test_transport_failure_appends_error_and_reraises():
    transport = FakeTransport(error=ApiError(code="API_ERROR", message="boom", http_status=500))
    service, store = _service(transport)
    chat = service.create_chat()
    stream = service.send_message(chat.id, "hi")
    seen = []
    with pytest.raises(ApiError):
        for snapshot in stream:
            seen.append(snapshot)

    errors = [m for m in seen[-1].messages if m.is_error]
    assert len(errors) == 1
    assert errors[0].text == ERROR_MESSAGE_TEXT
    assert not errors[0].is_user
    stored = store.get(chat.id)
    assert stored == seen[-1]
    assert stored.streaming_message() is None


def test_mid_stream_failure_keeps_partial_answer():
    transport = FakeTransport(["par", "tial", "never"], error=NetworkError(code="NETWORK_ERROR", message="reset"), fail_after=2)
    service, store = _service(transport)
    chat = service.create_chat()
    with pytest.raises(NetworkError):
        list(service.send_message(chat.id, "hi"))
    stored = store.get(chat.id)
    assert [m.text for m in stored.messages] == ["hi", "partial", ERROR_MESSAGE_TEXT]
    assert [m.is_error for m in stored.messages] == [False, False, True]
    assert not any(m.is_streaming for m in stored.messages)


def test_send_to_missing_chat_raises_without_side_effect():
    service, store = _service()
    with pytest.raises(ChatNotFound):
        list(service.send_message("missing", "hi"))
    assert store.list() == []


def test_concurrent_send_on_same_chat_is_rejected():
    service, _ = _service(FakeTransport(["a", "b"]))
    chat = service.create_chat()
    first = service.send_message(chat.id, "one")
    next(first)
    with pytest.raises(ChatBusy):
        next(service.send_message(chat.id, "two"))
    list(first)
    # 上一次发送结束后可以再次发送
    assert list(service.send_message(chat.id, "three"))


def test_closing_snapshot_stream_releases_chat():
    service, store = _service(FakeTransport(["a", "b"]))
    chat = service.create_chat()
    stream = service.send_message(chat.id, "one")
    next(stream)
    next(stream)
    next(stream)
    stream.close()
    assert store.get(chat.id).streaming_message() is None
    assert list(service.send_message(chat.id, "again"))


def test_breaking_out_mid_stream_finalizes_placeholder():
    service, store = _service(FakeTransport(["a", "b", "c"]))
    chat = service.create_chat()
    for snapshot in service.send_message(chat.id, "hi"):
        if snapshot.messages[-1].text == "a":
            break
    stored = store.get(chat.id)
    assert stored.streaming_message() is None
    assert [m.text for m in stored.messages] == ["hi", "a"]

    for snapshot in service.send_message(chat.id, "next"):
        assert sum(1 for m in snapshot.messages if m.is_streaming) <= 1


def test_closing_before_first_delta_finalizes_placeholder():
    service, store = _service(FakeTransport(["a"]))
    chat = service.create_chat()
    stream = service.send_message(chat.id, "hi")
    next(stream)
    assert next(stream).messages[-1].is_streaming
    stream.close()
    stored = store.get(chat.id)
    assert stored.streaming_message() is None
    assert stored.messages[-1].text == ""


def test_stale_streaming_flag_is_cleared_on_next_send():
    service, store = _service(FakeTransport(["ok"]))
    chat = service.create_chat()
    stale = Message.assistant_placeholder()
    stale.text = "half"
    chat.messages.extend([Message.user("hi"), stale])
    store.put(chat)

    snapshots = list(service.send_message(chat.id, "again"))
    assert all(sum(1 for m in s.messages if m.is_streaming) <= 1 for s in snapshots)
    final = store.get(chat.id)
    assert final.streaming_message() is None
    assert [m.text for m in final.messages] == ["hi", "half", "again", "ok"]


def test_cancel_finalizes_partial_answer():
    transport = FakeTransport(["a", "b", "c"])
    service, store = _service(transport)
    chat = service.create_chat()
    snapshots = []
    for snapshot in service.send_message(chat.id, "hi"):
        snapshots.append(snapshot)
        if snapshot.messages[-1].text == "a":
            service.cancel_stream()
    final = snapshots[-1]
    assert final.messages[-1].text == "a"
    assert not final.messages[-1].is_streaming
    assert store.get(chat.id) == final


def test_persistence_failure_propagates():
    class FlakyMedium(MemoryKeyValueStore):
        writes = 0

        def set(self, key, value):
            FlakyMedium.writes += 1
            if FlakyMedium.writes > 2:
                raise OSError("disk full")
            super().set(key, value)

    service = ChatService(store=KeyValueChatStore(FlakyMedium()), transport=FakeTransport(["a"]))
    chat = service.create_chat()
    with pytest.raises(StorageWriteError):
        list(service.send_message(chat.id, "hi"))


def test_toggle_pin_rename_delete_and_clear():
    service, store = _service()
    chat = service.create_chat("hello")
    assert service.toggle_pin(chat.id).pinned
    assert not service.toggle_pin(chat.id).pinned
    assert service.rename_chat(chat.id, "Renamed").title == "Renamed"
    assert store.get(chat.id).title == "Renamed"
    with pytest.raises(ValidationError):
        service.rename_chat(chat.id, "  ")
    with pytest.raises(ChatNotFound):
        service.toggle_pin("missing")
    with pytest.raises(ChatNotFound):
        service.rename_chat("missing", "x")

    service.last_active_chat_id = chat.id
    service.delete_chat(chat.id)
    assert service.list_chats() == []
    assert service.last_active_chat_id is None
    service.delete_chat(chat.id)

    service.create_chat("a")
    other = service.create_chat("b")
    service.last_active_chat_id = other.id
    service.clear_all_chats()
    assert service.list_chats() == []
    assert service.last_active_chat_id is None


def test_corrupt_storage_is_treated_as_empty():
    medium = MemoryKeyValueStore({"chat_app_chats": "{not json"})
    service = ChatService(store=KeyValueChatStore(medium, storage_key="chat_app_chats"), transport=FakeTransport())
    assert service.list_chats() == []
    with pytest.raises(ChatNotFound):
        service.get_chat("c1")
    chat = service.create_chat()
    assert [c.id for c in service.list_chats()] == [chat.id]


def test_chats_survive_reload_from_disk():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        service = ChatService(store=KeyValueChatStore(JsonFileKeyValueStore(root=root)), transport=FakeTransport(["ok"]))
        chat = service.create_chat()
        list(service.send_message(chat.id, "hi"))
        service.last_active_chat_id = chat.id

        reloaded = ChatService(store=KeyValueChatStore(JsonFileKeyValueStore(root=root)), transport=FakeTransport())
        assert reloaded.last_active_chat_id == chat.id
        restored = reloaded.get_chat(chat.id)
        assert [m.text for m in restored.messages] == ["hi", "ok"]
