"""流式传输抽象接口。

上层 ChatService 不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- stream_completion(history): 发起一次流式请求，惰性产出纯文本增量。
- cancel(): 中止正在进行的请求；没有请求时为空操作。

产出的迭代器是单次、单消费者的，不可重启。
"""

from typing import Iterator, Protocol, Sequence

from chat_core.domain.models import ChatMessage


class StreamingTransport(Protocol):
    """流式补全客户端协议。"""

    name: str

    def stream_completion(self, history: Sequence[ChatMessage]) -> Iterator[str]:
        ...

    def cancel(self) -> None:
        ...

    @property
    def cancelled(self) -> bool:
        """最近一次流是否因 cancel() 而结束。"""

        ...
