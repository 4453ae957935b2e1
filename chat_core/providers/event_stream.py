"""流式响应（text/event-stream）的增量解析。

响应体是以换行分隔的事件帧，按任意大小的字节块到达。解析器在块之间
保留一个尚未完整的行缓冲：每来一块就追加到缓冲，按换行切分，最后一段
（可能不完整）留作新的缓冲，其余完整行逐行处理。

- 只有以 "data: " 开头的行有意义，去掉前缀得到 payload。
- payload 为 "[DONE]" 时立即结束，丢弃剩余缓冲。
- 其他 payload 按 JSON 解析；解析失败的帧记录日志后跳过，不中断整个流。
- 解析成功后取 choices[0].delta.content，非空时作为一个增量产出。
"""

import codecs
import json
from typing import Any, List, Optional

from chat_core.infrastructure.logging.logger import logger


DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def extract_delta(payload: Any) -> Optional[str]:
    """按 choices[0].delta.content 取增量文本，任一环节缺失时返回 None。"""

    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


class EventStreamDecoder:
    """跨块边界的事件流解析器，产出纯文本增量。

    同一个实例只对应一次响应，done 之后继续 feed 不再产出任何内容。
    """

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.done = False
        self.skipped_frames = 0

    def feed(self, chunk: bytes | str) -> List[str]:
        """追加一块数据，返回由这块数据补全的所有增量（按到达顺序）。"""

        if self.done:
            return []
        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process_lines(lines)

    def flush(self) -> List[str]:
        """连接关闭时处理最后一行（没有换行结尾的残余数据）。"""

        if self.done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if not tail:
            return []
        return self._process_lines([tail])

    def _process_lines(self, lines: List[str]) -> List[str]:
        deltas: List[str] = []
        for line in lines:
            delta = self._process_line(line)
            if self.done:
                self._buffer = ""
                break
            if delta:
                deltas.append(delta)
        return deltas

    def _process_line(self, line: str) -> Optional[str]:
        if line.endswith("\r"):
            line = line[:-1]
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):]
        if data == DONE_SENTINEL:
            self.done = True
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            self.skipped_frames += 1
            logger.warning(
                "Skipping malformed stream frame",
                extra={"extra": {"error": str(e), "frame": data[:200]}},
            )
            return None
        return extract_delta(payload)
