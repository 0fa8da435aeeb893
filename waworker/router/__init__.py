"""
消息路由模块 - 把连接收到的入站消息交给应答策略，并记录对话流水。

消息流向：
  协议层 messages.upsert → Connection → MessageRouter → ResponseStrategy
                                                 ↓
  协议层 send_text ← Connection ← 回复文本 ←──────┘

模块组成：
- events.py     : InboundMessage 与原始消息解析（文本提取、回声抑制）
- strategies.py : WebhookStrategy / AIStrategy 与 StrategyResolver
- router.py     : MessageRouter 处理流水线
"""

from waworker.router.events import InboundMessage, parse_message
from waworker.router.router import MessageRouter
from waworker.router.strategies import AIStrategy, ResponseStrategy, StrategyResolver, WebhookStrategy

__all__ = [
    "AIStrategy",
    "InboundMessage",
    "MessageRouter",
    "ResponseStrategy",
    "StrategyResolver",
    "WebhookStrategy",
    "parse_message",
]
