import json
from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import InvalidRecord, StorageCorrupt, StorageWriteError
from chat_core.domain.models import Chat, chat_from_record, chat_to_record, record_problem
from chat_core.domain.store import ChatStore, KeyValueStore
from chat_core.infrastructure.logging.logger import logger


LAST_ACTIVE_CHAT_KEY = "chat_app_last_active_chat"


class KeyValueChatStore(ChatStore):
    """把全部会话作为一个 JSON 数组保存在键值介质的单个键下。

    每次修改都整体重写集合；读写两侧都会做记录校验。
    """

    def __init__(self, medium: KeyValueStore, storage_key: Optional[str] = None):
        self._medium = medium
        self._key = storage_key or settings.chats_storage_key

    def list(self) -> List[Chat]:
        return [chat_from_record(r) for r in self._read_records()]

    def get(self, chat_id: str) -> Optional[Chat]:
        for record in self._read_records():
            if record["id"] == chat_id:
                return chat_from_record(record)
        return None

    def put(self, chat: Chat) -> None:
        record = chat_to_record(chat)
        problem = record_problem(record)
        if problem:
            raise InvalidRecord(code="INVALID_RECORD", message=problem, chat_id=chat.id)
        records = self._records_for_write()
        for idx, existing in enumerate(records):
            if existing["id"] == chat.id:
                records[idx] = record
                break
        else:
            records.append(record)
        self._write_records(records)

    def delete(self, chat_id: str) -> None:
        records = self._records_for_write()
        remaining = [r for r in records if r["id"] != chat_id]
        if len(remaining) == len(records):
            return
        self._write_records(remaining)

    def clear(self) -> None:
        self._write_records([])

    def get_last_active_chat_id(self) -> Optional[str]:
        return self._medium.get(LAST_ACTIVE_CHAT_KEY) or None

    def set_last_active_chat_id(self, chat_id: Optional[str]) -> None:
        try:
            if chat_id:
                self._medium.set(LAST_ACTIVE_CHAT_KEY, chat_id)
            else:
                self._medium.delete(LAST_ACTIVE_CHAT_KEY)
        except Exception as e:
            raise StorageWriteError(cause=str(e)) from e

    # ---- 内部读写 ----

    def _read_records(self) -> List[Dict[str, Any]]:
        raw = self._medium.get(self._key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageCorrupt(code="STORE_CORRUPT", message=f"Stored chats are not valid JSON: {e}")
        if not isinstance(data, list):
            raise StorageCorrupt(code="STORE_CORRUPT", message="Stored chats are not a list")
        for idx, record in enumerate(data):
            problem = record_problem(record)
            if problem:
                raise StorageCorrupt(code="STORE_CORRUPT", message=f"Stored chat #{idx} is invalid: {problem}")
            try:
                chat_from_record(record)
            except (KeyError, TypeError, ValueError) as e:
                raise StorageCorrupt(code="STORE_CORRUPT", message=f"Stored chat #{idx} is invalid: {e}")
        return data

    def _records_for_write(self) -> List[Dict[str, Any]]:
        try:
            return self._read_records()
        except StorageCorrupt as e:
            # 已损坏的集合视为空，写入时整体覆盖
            logger.warning(
                "Discarding corrupt chat collection",
                extra={"extra": {"storage_key": self._key, "error": e.message}},
            )
            return []

    def _write_records(self, records: List[Dict[str, Any]]) -> None:
        try:
            self._medium.set(self._key, json.dumps(records, ensure_ascii=False))
        except Exception as e:
            logger.error(
                "Failed to save chats",
                extra={"extra": {"storage_key": self._key, "error": str(e)}},
            )
            raise StorageWriteError(cause=str(e)) from e
