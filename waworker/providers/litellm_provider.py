"""
LiteLLM 提供者实现模块：多 LLM 服务商的统一调用层。

LiteLLM 将 100+ 家 LLM 服务商的 API 统一为 OpenAI 兼容格式，
模型名使用 "provider/model" 前缀路由（如 "openai/gpt-4o-mini"、"anthropic/claude-3-5-haiku-latest"）。
类比 Java 世界：LiteLLM 类似于 JDBC，一套接口，多种数据库驱动。

错误容错：调用失败时返回 finish_reason="error" 的 LLMResponse 而非抛出异常，
AI 应答策略据此决定不发送回复。
"""

from typing import Any

import litellm
from litellm import acompletion

from waworker.providers.base import LLMProvider, LLMResponse


class LiteLLMProvider(LLMProvider):
    """
    基于 LiteLLM 的 LLM 提供者实现类。

    构造参数：
        api_key: API 密钥（为空时由 LiteLLM 从 OPENAI_API_KEY 等标准环境变量读取）
        api_base: 自定义 API 基础 URL（用于代理/网关/本地部署）
        default_model: 默认模型名称
        timeout_s: 单次请求超时（秒）
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "openai/gpt-4o-mini",
        timeout_s: float = 30.0,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.timeout_s = timeout_s

        # 禁用 LiteLLM 的调试日志输出（默认很啰嗦）
        litellm.suppress_debug_info = True
        # 自动丢弃服务商不支持的参数（避免因多余参数导致请求失败）
        litellm.drop_params = True

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": self.timeout_s,
        }

        # 直接传 api_key 比仅依赖环境变量更可靠
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = await acompletion(**kwargs)
            return self._parse_response(response)
        except Exception as e:
            # 出错时返回错误信息而非抛出异常，由调用方决定是否回复
            return LLMResponse(
                content=f"Error calling LLM: {str(e)}",
                finish_reason="error",
            )

    def _parse_response(self, response: Any) -> LLMResponse:
        """
        将 LiteLLM 的原始响应解析为统一的 LLMResponse 格式。

        LiteLLM 的响应格式遵循 OpenAI 规范：取 response.choices[0].message.content。
        """
        choice = response.choices[0]

        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )
