"""
LLM 提供者抽象层模块（providers 包）。

模块组成：
- base.py             : LLMProvider 抽象基类和 LLMResponse 数据结构
- litellm_provider.py : LLMProvider 的实现类，基于 LiteLLM 对接所有 LLM 服务商

AI 应答策略的"思考能力"来自 LLMProvider.chat()。
"""

from waworker.providers.base import LLMProvider, LLMResponse
from waworker.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
