"""
消息路由器模块 - 入站消息的处理流水线。

对一批入站消息中的每一条，按接收顺序依次执行：
1. 解析：跳过我方发出的消息（回声抑制）和没有文本的消息
2. 记录：把入站文本写入对话流水（direction = inbound）
3. 选择：读取实例配置，解析出唯一的应答策略（Webhook 优先，否则 AI）
4. 应答：运行策略；没有回复则结束
5. 发送：把回复发回原发送者，并写入对话流水（direction = outbound）

同一批次内串行处理；不同实例（或同一实例的不同批次）的批次由调用方并发调度。
单条消息的任何异常只影响这一条，不会中断批次内后续消息。
"""

from typing import Any, Awaitable, Callable

from loguru import logger

from waworker.router.events import InboundMessage, parse_message
from waworker.router.strategies import StrategyResolver
from waworker.storage.base import Instance, Store, StoreError, TranscriptEntry
from waworker.utils.helpers import truncate_string, utc_now

# (to, text) -> 发送完成
SendFunc = Callable[[str, str], Awaitable[None]]


class MessageRouter:
    """
    消息路由器。

    属性:
        store: 持久化存储（对话流水 + 实例配置）
        resolver: 应答策略解析器
    """

    def __init__(self, store: Store, resolver: StrategyResolver):
        self.store = store
        self.resolver = resolver

    async def handle_batch(self, instance_id: str, messages: list[dict[str, Any]], send: SendFunc) -> None:
        """
        处理一批协议层原始消息。

        参数:
            instance_id: 收到消息的实例
            messages: 协议层原始消息列表
            send: 通过该实例的连接发送文本的函数
        """
        for raw in messages:
            try:
                await self.handle_message(instance_id, raw, send)
            except Exception as e:
                logger.error(f"[{instance_id}] Error routing message: {e}")

    async def handle_message(self, instance_id: str, raw: dict[str, Any], send: SendFunc) -> str | None:
        """
        处理单条原始消息。

        返回:
            已发送的回复文本；没有回复时返回 None
        """
        msg = parse_message(instance_id, raw)
        if msg is None:
            return None

        logger.info(f"[{instance_id}] Message from {msg.sender}: {truncate_string(msg.content, 80)}")
        await self._record(msg.instance_id, msg.sender, msg.content, is_from_me=False, msg=msg)

        instance = await self._load_instance(instance_id)
        strategy = self.resolver.resolve(instance)
        reply = await strategy.reply(msg)
        if not reply:
            logger.debug(f"[{instance_id}] No reply from {strategy.name} strategy for {msg.sender}")
            return None

        try:
            await send(msg.sender, reply)
        except Exception as e:
            logger.error(f"[{instance_id}] Failed to send reply to {msg.sender}: {e}")
            return None

        await self._record(msg.instance_id, msg.sender, reply, is_from_me=True)
        logger.info(f"[{instance_id}] Replied to {msg.sender} via {strategy.name}")
        return reply

    async def _load_instance(self, instance_id: str) -> Instance | None:
        try:
            return await self.store.get_instance(instance_id)
        except StoreError as e:
            logger.warning(f"[{instance_id}] Cannot load response config: {e}")
            return None

    async def _record(
        self,
        instance_id: str,
        sender: str,
        content: str,
        is_from_me: bool,
        msg: InboundMessage | None = None,
    ) -> None:
        """写入一条对话流水（尽力而为，失败只记录日志）。入站流水使用消息的接收时间。"""
        entry = TranscriptEntry(
            instance_id=instance_id,
            sender=sender,
            content=content,
            is_from_me=is_from_me,
            created_at=msg.received_at if msg else utc_now(),
        )
        try:
            await self.store.append_message(entry)
        except StoreError as e:
            logger.warning(f"[{instance_id}] Failed to record transcript entry: {e}")
