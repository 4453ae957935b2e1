import os
import re
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.store import KeyValueStore


_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileKeyValueStore(KeyValueStore):
    """基于文件的键值介质，每个键一个文件。

    写入先落到临时文件再 os.replace，保证单次写入要么完整生效要么不生效。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._kv_root = self._root / "kv"
        self._kv_root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = self._kv_root / f"{key}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def _path(self, key: str) -> Path:
        if not key or not _KEY_PATTERN.match(key):
            raise ValidationError(code="INVALID_STORAGE_KEY", message=f"Invalid storage key: {key!r}")
        return self._kv_root / f"{key}.json"


class MemoryKeyValueStore(KeyValueStore):
    """进程内键值介质，用于测试与嵌入场景。"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
