"""
持久化存储基类定义模块。

本模块定义了 waworker 与外部持久化服务交互的抽象接口和数据结构：
- InstanceStatus   : 实例状态枚举（与 instances.status 列的取值一一对应）
- Instance         : instances 表的一行
- KeyRecord        : 凭证键值表的一行（区分"没有这一行"与"这一行的 data 为空"）
- TranscriptEntry  : messages 表（对话流水）的一行
- Store            : 抽象基类，所有存储后端必须实现

错误约定：
- "没有找到"不是错误，读方法返回 None
- 后端故障（网络、权限、格式错误）统一抛出 StoreError，由调用方决定降级策略

当前实现：
- SupabaseStore（supabase.py）：生产环境
- MemoryStore（memory.py）：本地调试与测试
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from waworker.utils.helpers import utc_now


class StoreError(Exception):
    """存储后端故障（区别于"记录不存在"）。"""


class InstanceStatus(str, Enum):
    """实例状态，取值即为持久化到 instances.status 的文本。"""
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    PAIRING_CODE = "pairing_code"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR_401 = "error_401"


@dataclass
class Instance:
    """
    租户实例（instances 表的一行）。

    属性:
        id: 实例唯一标识（外部稳定 key）
        status: 当前持久化状态
        qr_code: 待扫描的二维码内容或配对码（可能为空）
        system_prompt: AI 策略使用的系统提示词（可能为空）
        webhook_url: Webhook 策略的回调地址（可能为空，非空时优先于 AI 策略）
    """
    id: str
    status: str = InstanceStatus.DISCONNECTED.value
    qr_code: str | None = None
    system_prompt: str | None = None
    webhook_url: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Instance":
        """从数据库行字典构造。"""
        return cls(
            id=str(row["id"]),
            status=row.get("status") or InstanceStatus.DISCONNECTED.value,
            qr_code=row.get("qr_code"),
            system_prompt=row.get("system_prompt"),
            webhook_url=row.get("webhook_url"),
        )


@dataclass
class KeyRecord:
    """凭证键值表中存在的一行。data 可能为 None（行存在但载荷为空）。"""
    key_id: str
    data: Any | None


@dataclass
class TranscriptEntry:
    """
    对话流水记录（只追加，写入后不再修改）。

    属性:
        instance_id: 所属实例
        sender: 对端标识（入站为发送者，出站为接收者）
        content: 消息文本
        is_from_me: True 表示出站（我方发送），False 表示入站
        created_at: 写入时间
    """
    instance_id: str
    sender: str
    content: str
    is_from_me: bool
    created_at: datetime = field(default_factory=utc_now)

    @property
    def role(self) -> str:
        """映射为 LLM 对话角色：出站为 assistant，入站为 user。"""
        return "assistant" if self.is_from_me else "user"


class Store(ABC):
    """
    持久化存储抽象基类（类似 Java 的 Repository interface）。

    三组操作分别对应三张表：instances、凭证键值表、messages。
    """

    # ===== instances =====

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Instance | None:
        """读取实例；不存在时返回 None。"""

    @abstractmethod
    async def update_instance(self, instance_id: str, **fields: Any) -> None:
        """更新实例的若干列（如 status、qr_code）。"""

    @abstractmethod
    async def list_instances(self, status: str | None = None) -> list[Instance]:
        """列出实例，可按状态过滤。"""

    # ===== 凭证键值 =====

    @abstractmethod
    async def read_key(self, session_id: str, key_id: str) -> KeyRecord | None:
        """读取一条凭证记录；没有这一行时返回 None。"""

    @abstractmethod
    async def write_key(self, session_id: str, key_id: str, data: Any) -> None:
        """写入（upsert）一条凭证记录。data 已经过二进制占位编码。"""

    @abstractmethod
    async def delete_key(self, session_id: str, key_id: str) -> None:
        """删除一条凭证记录。"""

    @abstractmethod
    async def delete_all_keys(self, session_id: str) -> None:
        """删除某个实例的全部凭证记录（强制重置）。"""

    # ===== messages =====

    @abstractmethod
    async def append_message(self, entry: TranscriptEntry) -> None:
        """追加一条对话流水。"""

    @abstractmethod
    async def recent_messages(
        self,
        instance_id: str,
        sender: str,
        limit: int,
        before: datetime | None = None,
    ) -> list[TranscriptEntry]:
        """
        读取某个 (实例, 对端) 最近的 limit 条流水。

        参数:
            before: 只取 created_at 严格早于该时间的流水（None 表示不限）

        返回:
            按时间从旧到新排列的列表
        """

    async def close(self) -> None:
        """释放底层连接资源。默认无操作。"""
        return None
