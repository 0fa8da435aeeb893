"""
协议传输模块 - waworker 驱动外部 WhatsApp 协议库的窄契约。

模块组成：
- base.py   : Transport 抽象基类、事件类型、DisconnectReason 状态码
- bridge.py : 基于 WebSocket 的 Node.js 桥接实现（baileys）
"""

from waworker.transport.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredsUpdated,
    DisconnectReason,
    MessagesUpsert,
    QrEvent,
    Transport,
    TransportError,
    TransportEvent,
    TransportFactory,
    TransportOptions,
)

__all__ = [
    "ConnectionClosed",
    "ConnectionOpened",
    "CredsUpdated",
    "DisconnectReason",
    "MessagesUpsert",
    "QrEvent",
    "Transport",
    "TransportError",
    "TransportEvent",
    "TransportFactory",
    "TransportOptions",
]
