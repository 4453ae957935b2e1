"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

错误分类：
- ChatNotFound / ChatBusy: 调用方引用了不存在或正忙的会话。
- InvalidRecord / StorageCorrupt / StorageWriteError: 持久化层错误。
- TransportError 及其子类: 流式请求失败（非 2xx 或连接失败）。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "CHAT_NOT_FOUND"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 chat_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ChatNotFound(BusinessError):
    """引用的会话 id 在存储中不存在。"""

    def __init__(self, chat_id: str):
        super().__init__(code="CHAT_NOT_FOUND", message=f"Chat not found: {chat_id}", http_status=404, chat_id=chat_id)


class ChatBusy(BusinessError):
    """同一会话已有一次 send_message 正在进行。"""

    def __init__(self, chat_id: str):
        super().__init__(code="CHAT_BUSY", message=f"Chat is busy: {chat_id}", http_status=409, chat_id=chat_id)


class InvalidRecord(BusinessError):
    """写入的会话记录未通过校验。"""


class StorageCorrupt(BusinessError):
    """存储介质中的数据无法解析或未通过校验。

    调用方应当把存储视为空，而不是崩溃。
    """


class StorageWriteError(BusinessError):
    """整体写回会话集合失败。"""

    def __init__(self, cause: str = ""):
        super().__init__(
            code="STORE_WRITE_ERROR",
            message="Failed to save chats to storage",
            http_status=500,
            cause=cause,
        )


class TransportError(BusinessError):
    """流式传输层错误的基类，携带 HTTP 状态码或网络原因。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(TransportError):
    """远端返回非 2xx 响应时抛出。"""


class RateLimitError(ApiError):
    """Provider 限流错误（HTTP 429）。"""


class TransportBusy(TransportError):
    """同一个客户端实例上已有一个流式请求在进行。"""
