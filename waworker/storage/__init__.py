"""
持久化存储模块 - 实例状态、协议凭证与对话流水的外部存储。

模块组成：
- base.py     : Store 抽象基类与数据结构（Instance、KeyRecord、TranscriptEntry）
- supabase.py : 基于 supabase-py 异步客户端的生产实现
- memory.py   : 进程内字典实现（本地调试与测试）
"""

from waworker.storage.base import (
    Instance,
    InstanceStatus,
    KeyRecord,
    Store,
    StoreError,
    TranscriptEntry,
)
from waworker.storage.memory import MemoryStore

__all__ = [
    "Instance",
    "InstanceStatus",
    "KeyRecord",
    "MemoryStore",
    "Store",
    "StoreError",
    "TranscriptEntry",
]
