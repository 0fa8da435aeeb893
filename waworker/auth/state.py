"""
认证状态类型定义模块。

本模块定义了协议层（transport）与凭证存储之间的全部契约：
- AuthStore           : 协议层唯一依赖的凭证存储接口（get / set / load / persist）
- AuthState           : 一次连接使用的认证状态（主凭证 creds + 键存储 keys）
- AppStateSyncKeyData : app-state-sync-key 类别在读取时需要重建的类型
- init_auth_creds()   : 没有任何持久化凭证时使用的默认主凭证

【Java 开发者类比】
- AuthStore 相当于一个 interface，CredentialStore 是它的实现类
- AuthState 相当于一个持有 interface 引用的 DTO
"""

import base64
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

# 主凭证在键值表中的固定 key
CREDS_KEY = "creds"

# 读取时需要类型重建的键类别
APP_STATE_SYNC_KEY = "app-state-sync-key"

# set() 中的删除标记：值为 None 表示删除该键
KeyUpdates = dict[str, dict[str, Any | None]]


class AuthStore(ABC):
    """
    凭证存储接口 - 协议层读写凭证的唯一入口。

    协议层只依赖这个接口，从不直接接触 Supabase 等具体存储。
    """

    @abstractmethod
    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any | None]:
        """
        批量读取某一类别下的若干键。

        参数:
            key_type: 键类别（如 "pre-key"、"session"、"app-state-sync-key"）
            ids: 键 ID 列表

        返回:
            {id: 值}，不存在的键对应 None
        """

    @abstractmethod
    async def set(self, updates: KeyUpdates) -> None:
        """
        批量写入/删除键。

        参数:
            updates: {类别: {id: 值或 None}}，None 表示删除
        """

    @abstractmethod
    async def load_credentials(self) -> dict[str, Any]:
        """读取主凭证；不存在时返回 init_auth_creds() 产生的默认值。"""

    @abstractmethod
    async def persist_credentials(self, creds: dict[str, Any]) -> None:
        """持久化主凭证（协议层每次触发 creds 更新时调用）。"""


@dataclass
class AuthState:
    """
    一次连接使用的认证状态。

    属性:
        creds: 主凭证（包含二进制字段，内存中以 bytes 表示）
        keys: 凭证存储接口，协议层通过它读写辅助键（pre-key、session 等）
    """
    creds: dict[str, Any]
    keys: AuthStore

    @property
    def registered(self) -> bool:
        """主凭证是否已完成登录注册（扫码或配对码成功后由协议层置为 True）。"""
        return bool(self.creds.get("registered"))

    async def save_creds(self) -> None:
        """把当前主凭证写回存储。"""
        await self.keys.persist_credentials(self.creds)


def init_auth_creds() -> dict[str, Any]:
    """
    生成默认主凭证（全新登录）。

    只生成与密码学无关的字段；噪声密钥、身份密钥、签名预共享密钥等
    密钥对由桥接服务在首次握手时补全。
    """
    return {
        "registrationId": secrets.randbelow(16380) + 1,
        "advSecretKey": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
        "nextPreKeyId": 1,
        "firstUnuploadedPreKeyId": 1,
        "accountSyncCounter": 0,
        "processedHistoryMessages": [],
        "accountSettings": {"unarchiveChats": False},
        "registered": False,
    }


@dataclass
class AppStateSyncKeyFingerprint:
    """app-state 同步密钥指纹。"""
    raw_id: int | None = None
    current_index: int | None = None
    device_indexes: list[int] = field(default_factory=list)


@dataclass
class AppStateSyncKeyData:
    """
    app-state 同步密钥数据。

    持久化后的形状（camelCase 字典、时间戳可能是字符串形式的长整型、
    keyData 可能是 base64 字符串）协议层无法直接使用，
    读取时必须经过 from_object() 重建，发送给协议层前再通过 to_object() 输出规范形状。
    """
    key_data: bytes | None = None
    fingerprint: AppStateSyncKeyFingerprint | None = None
    timestamp: int | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "AppStateSyncKeyData":
        """从持久化的字典形状重建。"""
        key_data = obj.get("keyData")
        if isinstance(key_data, str):
            key_data = base64.b64decode(key_data)
        elif isinstance(key_data, list):
            key_data = bytes(key_data)

        fingerprint = None
        fp = obj.get("fingerprint")
        if isinstance(fp, dict):
            fingerprint = AppStateSyncKeyFingerprint(
                raw_id=_to_int(fp.get("rawId")),
                current_index=_to_int(fp.get("currentIndex")),
                device_indexes=[int(i) for i in fp.get("deviceIndexes") or []],
            )

        return cls(key_data=key_data, fingerprint=fingerprint, timestamp=_to_int(obj.get("timestamp")))

    def to_object(self) -> dict[str, Any]:
        """输出协议层使用的规范字典形状（bytes 字段保持为 bytes）。"""
        obj: dict[str, Any] = {}
        if self.key_data is not None:
            obj["keyData"] = self.key_data
        if self.fingerprint is not None:
            fp: dict[str, Any] = {"deviceIndexes": list(self.fingerprint.device_indexes)}
            if self.fingerprint.raw_id is not None:
                fp["rawId"] = self.fingerprint.raw_id
            if self.fingerprint.current_index is not None:
                fp["currentIndex"] = self.fingerprint.current_index
            obj["fingerprint"] = fp
        if self.timestamp is not None:
            obj["timestamp"] = self.timestamp
        return obj


def _to_int(value: Any) -> int | None:
    """把 protobuf 长整型的各种 JSON 表示（int / 数字字符串 / {low, high}）转为 int。"""
    if value is None:
        return None
    if isinstance(value, dict) and "low" in value:
        return (int(value.get("high", 0)) << 32) | (int(value["low"]) & 0xFFFFFFFF)
    return int(value)
