"""
应答策略模块 - 为一条入站消息生成回复。

两种策略，按实例配置严格二选一：
- WebhookStrategy : 把消息 POST 给租户配置的 URL，取响应 JSON 的 reply 字段作为回复
- AIStrategy      : 取该 (实例, 对端) 最近 N 条流水作为上下文，调用 LLM 生成回复

选择规则（StrategyResolver.resolve）：
    配置了 webhook_url → Webhook(url)，否则 → AI(system_prompt 或默认提示词)
每条消息只解析一次、只运行一个策略。

失败语义：任何网络、解析或模型错误都返回 None（不回复、不重试），只记录警告日志。
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx
from loguru import logger

from waworker.config.schema import AIConfig
from waworker.providers.base import LLMProvider
from waworker.router.events import InboundMessage
from waworker.storage.base import Instance, Store, StoreError


class ResponseStrategy(ABC):
    """应答策略抽象基类。"""

    name: str = "base"

    @abstractmethod
    async def reply(self, message: InboundMessage) -> str | None:
        """
        为入站消息生成回复。

        返回:
            回复文本；不回复时返回 None
        """


class WebhookStrategy(ResponseStrategy):
    """
    Webhook 策略。

    请求体: {"event": "message", "instance_id", "from", "body"}
    响应体: {"reply": "..."}，缺少 reply 或 reply 为空表示不回复
    """

    name = "webhook"

    def __init__(self, url: str, client: httpx.AsyncClient, timeout_s: float = 10.0):
        self.url = url
        self.client = client
        self.timeout_s = timeout_s

    async def reply(self, message: InboundMessage) -> str | None:
        payload = {
            "event": "message",
            "instance_id": message.instance_id,
            "from": message.sender,
            "body": message.content,
        }
        try:
            response = await self.client.post(self.url, json=payload, timeout=self.timeout_s)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[{message.instance_id}] Webhook {self.url} failed: {e}")
            return None

        reply = data.get("reply") if isinstance(data, dict) else None
        if not isinstance(reply, str) or not reply:
            return None
        return reply


class AIStrategy(ResponseStrategy):
    """
    AI 策略。

    请求的消息列表: [system] + 最近 N 条历史（旧到新）+ [当前用户消息]。
    历史中的出站流水映射为 assistant，入站流水映射为 user。
    """

    name = "ai"

    def __init__(self, system_prompt: str, provider: LLMProvider, store: Store, config: AIConfig):
        self.system_prompt = system_prompt
        self.provider = provider
        self.store = store
        self.config = config

    async def load_history(self, message: InboundMessage) -> list[dict[str, Any]]:
        """
        读取该 (实例, 对端) 在当前消息之前的最近 history_limit 条流水。

        以 received_at 为界：当前消息本身以及同一对端并发到达的更晚消息都不计入。
        """
        limit = self.config.history_limit
        try:
            entries = await self.store.recent_messages(
                message.instance_id, message.sender, limit, before=message.received_at
            )
        except StoreError as e:
            logger.warning(f"[{message.instance_id}] Cannot load history for {message.sender}: {e}")
            entries = []

        return [{"role": e.role, "content": e.content} for e in entries]

    async def reply(self, message: InboundMessage) -> str | None:
        history = await self.load_history(message)
        messages = [
            {"role": "system", "content": self.system_prompt},
            *history,
            {"role": "user", "content": message.content},
        ]

        response = await self.provider.chat(
            messages,
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        if response.is_error:
            logger.warning(f"[{message.instance_id}] AI completion failed: {response.content}")
            return None
        return response.content or None


class StrategyResolver:
    """
    策略解析器 - 持有各策略的共享依赖，按实例配置构造本条消息使用的策略。

    属性:
        provider: LLM 提供者（AI 策略）
        store: 持久化存储（AI 策略读取历史）
        http: 共享的 HTTP 客户端（Webhook 策略）
        ai_config: AI 配置（模型、历史窗口、默认提示词）
        webhook_timeout_s: Webhook 请求超时
    """

    def __init__(
        self,
        provider: LLMProvider,
        store: Store,
        http: httpx.AsyncClient,
        ai_config: AIConfig,
        webhook_timeout_s: float = 10.0,
    ):
        self.provider = provider
        self.store = store
        self.http = http
        self.ai_config = ai_config
        self.webhook_timeout_s = webhook_timeout_s

    def resolve(self, instance: Instance | None) -> ResponseStrategy:
        """
        根据实例配置选择策略（Webhook 优先）。

        参数:
            instance: 实例配置；读取失败时为 None，按未配置处理（AI + 默认提示词）
        """
        if instance is not None and instance.webhook_url:
            return WebhookStrategy(instance.webhook_url, self.http, self.webhook_timeout_s)

        prompt = (instance.system_prompt if instance else None) or self.ai_config.default_system_prompt
        return AIStrategy(prompt, self.provider, self.store, self.ai_config)
