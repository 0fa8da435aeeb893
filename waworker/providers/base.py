"""
LLM 提供者基类定义模块。

本模块定义了 AI 应答策略与大语言模型交互的抽象接口：
- LLMResponse : LLM 的统一响应格式（文本内容、结束原因、token 用量）
- LLMProvider : 抽象基类，所有 LLM 提供者必须实现 chat()

架构角色：
  入站消息 → AIStrategy → LLMProvider.chat() → LLM API → LLMResponse → 回复文本

类比 Java：
  - LLMProvider 相当于一个 interface
  - LLMResponse 相当于一个不可变的 DTO
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMResponse:
    """
    LLM 的统一响应数据结构。

    属性：
        content: LLM 返回的文本内容（出错时为错误描述）
        finish_reason: 结束原因（"stop"=正常结束, "length"=截断, "error"=出错）
        usage: token 用量统计（prompt_tokens, completion_tokens, total_tokens）
    """
    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        """调用是否失败。"""
        return self.finish_reason == "error"


class LLMProvider(ABC):
    """
    LLM 提供者抽象基类。

    属性：
        api_key: API 密钥
        api_base: API 基础 URL（用于自定义端点或代理）
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        发送对话补全请求。

        参数：
            messages: 消息列表，每条消息是 {"role": "system/user/assistant", "content": "..."} 格式
            model: 模型标识符（如 'openai/gpt-4o-mini'），为空时使用默认模型
            max_tokens: 响应的最大 token 数
            temperature: 采样温度

        返回：
            LLMResponse；失败时 finish_reason 为 "error"，不抛出异常
        """
        pass
