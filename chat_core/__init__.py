"""Chat Core 顶层包。

该包提供多会话流式聊天的核心实现，
包括配置加载、领域模型、流式 Provider 适配、
会话编排与持久化存储等能力。
"""

from chat_core.services.chat_service import ChatService

__all__ = ["ChatService"]
