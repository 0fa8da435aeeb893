"""
凭证模块 - 协议层认证状态的外部化持久存储。

模块组成：
- buffer_json.py : 二进制字段的 "标记 + base64" 对称编解码
- state.py       : AuthStore 接口、AuthState、app-state-sync-key 重建类型、默认凭证
- store.py       : CredentialStore，AuthStore 的实现（编解码 + 缓存 + 写入顺序）

凭证写入是"重启免扫码"的唯一持久化路径：协议层每次更新凭证都会经过这里落盘。
"""

from waworker.auth.state import AuthState, AuthStore, init_auth_creds
from waworker.auth.store import CredentialStore

__all__ = ["AuthState", "AuthStore", "CredentialStore", "init_auth_creds"]
