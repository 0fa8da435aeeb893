"""
会话生命周期模块 - 实例连接的创建、状态流转、重连与终止。

模块组成：
- connection.py : Connection 连接状态机（一次连接尝试）与关闭判定 classify_close
- registry.py   : SessionRegistry 会话注册表（每个实例最多一个活跃连接）
"""

from waworker.session.connection import CloseDecision, Connection, ConnectionState, classify_close
from waworker.session.registry import SessionHandle, SessionRegistry

__all__ = [
    "CloseDecision",
    "Connection",
    "ConnectionState",
    "SessionHandle",
    "SessionRegistry",
    "classify_close",
]
