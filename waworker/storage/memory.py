"""
内存存储实现 - 进程内字典，进程退出即丢失。

用于本地调试（storage.backend = "memory"）和测试。
行为约定与 SupabaseStore 保持一致：不存在返回 None，流水按 (时间, 写入顺序) 排序。
"""

import copy
import itertools
from datetime import datetime
from typing import Any

from waworker.storage.base import Instance, InstanceStatus, KeyRecord, Store, TranscriptEntry


class MemoryStore(Store):
    """
    基于字典的存储实现。

    属性:
        auto_create: 为 True 时 get_instance 会为未知 ID 自动创建实例行
        instances: {instance_id: Instance}
        keys: {(session_id, key_id): data}
        messages: [(写入序号, TranscriptEntry)]
    """

    def __init__(self, auto_create: bool = False):
        self.auto_create = auto_create
        self.instances: dict[str, Instance] = {}
        self.keys: dict[tuple[str, str], Any] = {}
        self.messages: list[tuple[int, TranscriptEntry]] = []
        self._seq = itertools.count()

    def add_instance(
        self,
        instance_id: str,
        system_prompt: str | None = None,
        webhook_url: str | None = None,
    ) -> Instance:
        """登记一个实例（测试和调试时代替外部前端创建实例行）。"""
        instance = Instance(id=instance_id, system_prompt=system_prompt, webhook_url=webhook_url)
        self.instances[instance_id] = instance
        return instance

    async def get_instance(self, instance_id: str) -> Instance | None:
        instance = self.instances.get(instance_id)
        if instance is None and self.auto_create:
            instance = self.add_instance(instance_id)
        return copy.copy(instance) if instance else None

    async def update_instance(self, instance_id: str, **fields: Any) -> None:
        instance = self.instances.get(instance_id)
        if instance is None:
            return  # 与 UPDATE ... WHERE id = ? 一致：没有匹配行时什么都不做
        for name, value in fields.items():
            if isinstance(value, InstanceStatus):
                value = value.value
            setattr(instance, name, value)

    async def list_instances(self, status: str | None = None) -> list[Instance]:
        return [
            copy.copy(i) for i in self.instances.values()
            if status is None or i.status == status
        ]

    async def read_key(self, session_id: str, key_id: str) -> KeyRecord | None:
        if (session_id, key_id) not in self.keys:
            return None
        return KeyRecord(key_id=key_id, data=copy.deepcopy(self.keys[(session_id, key_id)]))

    async def write_key(self, session_id: str, key_id: str, data: Any) -> None:
        self.keys[(session_id, key_id)] = copy.deepcopy(data)

    async def delete_key(self, session_id: str, key_id: str) -> None:
        self.keys.pop((session_id, key_id), None)

    async def delete_all_keys(self, session_id: str) -> None:
        for key in [k for k in self.keys if k[0] == session_id]:
            del self.keys[key]

    async def append_message(self, entry: TranscriptEntry) -> None:
        self.messages.append((next(self._seq), entry))

    async def recent_messages(
        self,
        instance_id: str,
        sender: str,
        limit: int,
        before: datetime | None = None,
    ) -> list[TranscriptEntry]:
        # 同一时间按写入顺序
        matching = [
            (entry.created_at, seq, entry) for seq, entry in self.messages
            if entry.instance_id == instance_id and entry.sender == sender
            and (before is None or entry.created_at < before)
        ]
        matching.sort(key=lambda item: (item[0], item[1]))
        return [entry for _, _, entry in matching[-limit:]] if limit > 0 else []
