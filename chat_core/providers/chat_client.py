"""OpenAI 兼容的流式补全客户端。

接口风格与 OpenAI 一致，使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 请求体: model/messages/temperature/stream=true
- 响应: text/event-stream，由 EventStreamDecoder 解析为纯文本增量。

每个实例同一时间至多一个流式请求在进行。
"""

from typing import Dict, Iterator, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    NetworkError,
    RateLimitError,
    TransportBusy,
    ValidationError,
)
from chat_core.domain.models import ChatMessage
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.event_stream import EventStreamDecoder
from chat_core.providers.registry import ModelConfig, ProviderConfig, get_provider_config


class StreamingChatClient:
    """流式补全客户端实现。

    - name: Provider 名称（供日志/调试使用）。
    - stream_completion: 发起流式请求，逐个 yield 文本增量。
    - cancel: 中止进行中的请求，已产出的增量不会撤回。
    """

    def __init__(
        self,
        cfg=settings,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ):
        self._settings = cfg
        provider_name = provider or getattr(cfg, "default_provider", "deepseek")
        try:
            self._provider: ProviderConfig = get_provider_config(provider_name)
        except KeyError as e:
            raise ValidationError(code="UNKNOWN_PROVIDER", message=str(e))
        self.name = self._provider.name
        self._api_key = getattr(cfg, f"{self.name}_api_key", None)
        if not self._api_key:
            # 配置缺失走 ValidationError，在发起任何请求前暴露出来
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name.upper()}_API_KEY not set")
        model_name = model or getattr(cfg, "default_model", "chat")
        if model_name not in self._provider.models:
            raise ValidationError(code="UNKNOWN_MODEL", message=f"Unknown model {model_name!r} for {self.name}")
        self._model_cfg: ModelConfig = self._provider.models[model_name]
        self._temperature = temperature if temperature is not None else getattr(cfg, "temperature", None)
        self._response: Optional[httpx.Response] = None
        self._in_flight = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def stream_completion(self, history: Sequence[ChatMessage]) -> Iterator[str]:
        """发起一次流式补全请求。

        在产出第一个增量之前，非 2xx 响应抛出 ApiError / RateLimitError，
        连接失败抛出 NetworkError。单个帧解析失败只会被跳过。
        """

        if self._in_flight:
            raise TransportBusy(code="TRANSPORT_BUSY", message="A stream is already in flight", provider=self.name)
        payload = self._build_payload(history)
        self._in_flight = True
        self._cancelled = False
        yield from self._iter_deltas(payload)

    def cancel(self) -> None:
        if not self._in_flight:
            return
        self._cancelled = True
        response = self._response
        if response is not None:
            response.close()
        logger.info("Stream cancelled", extra={"extra": {"provider": self.name}})

    # ---- 辅助方法 ----

    def _iter_deltas(self, payload: dict) -> Iterator[str]:
        decoder = EventStreamDecoder()
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    self._response = resp
                    self._raise_for_status(resp)
                    for chunk in resp.iter_bytes():
                        for delta in decoder.feed(chunk):
                            yield delta
                            if self._cancelled:
                                return
                        if decoder.done or self._cancelled:
                            return
                    for delta in decoder.flush():
                        yield delta
        except (httpx.RequestError, httpx.StreamError) as e:
            if self._cancelled:
                return
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__, provider=self.name)
        finally:
            self._response = None
            self._in_flight = False

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if 200 <= resp.status_code < 300:
            return
        body = resp.read().decode("utf-8", errors="replace")[:500]
        if resp.status_code == 429:
            # 限流错误交给上层决定是否重试
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
        raise ApiError(
            code="API_ERROR",
            message=f"API request failed with status {resp.status_code}: {body}",
            http_status=resp.status_code,
            provider=self.name,
        )

    def _build_payload(self, history: Sequence[ChatMessage]) -> dict:
        """把历史消息转成 chat/completions 请求 JSON。"""

        return {
            "model": self._model_cfg.provider_model,
            "messages": [m.to_payload() for m in history],
            "temperature": self._temperature if self._temperature is not None else self._model_cfg.default_temperature,
            "stream": True,
        }

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _base_url(self) -> str:
        base = getattr(self._settings, f"{self.name}_base_url", None) or self._provider.base_url
        return base.rstrip("/")
