"""流式 Provider 集成层。

该包下的模块负责：
- 定义流式传输抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 解析 text/event-stream 响应 (event_stream)。
- 提供 OpenAI 兼容的流式客户端实现 (chat_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import StreamingTransport
from chat_core.providers.chat_client import StreamingChatClient


def create_transport(name: Optional[str] = None) -> StreamingTransport:
    """根据名称创建流式客户端，默认取配置中的 provider。"""

    provider_name = (name or getattr(settings, "default_provider", "deepseek")).lower()
    return StreamingChatClient(settings, provider=provider_name)

