"""
Supabase 存储实现 - 通过 supabase-py 异步客户端访问 PostgREST。

表结构（由外部前端/迁移脚本维护）：
- instances:          id (主键), status, qr_code, system_prompt, webhook_url
- whatsapp_sessions:  (session_id, key_id) 复合主键, data (jsonb), updated_at
- messages:           instance_id, content, sender, is_from_me, created_at

所有后端异常都被包装为 StoreError 抛出；"没有这一行"返回 None，不视为错误。
created_at 可以是 timestamptz 也可以是不带时区的 timestamp（按 UTC 解释）。
"""

from datetime import datetime, timezone
from typing import Any

from loguru import logger
from supabase import AsyncClient, acreate_client

from waworker.config.schema import StorageConfig
from waworker.storage.base import Instance, KeyRecord, Store, StoreError, TranscriptEntry
from waworker.utils.helpers import utc_now


class SupabaseStore(Store):
    """
    基于 Supabase 的存储实现。

    使用 connect() 类方法创建实例（需要 await 异步客户端的初始化）。
    """

    def __init__(self, client: AsyncClient, config: StorageConfig):
        self.client = client
        self.instances_table = config.instances_table
        self.sessions_table = config.sessions_table
        self.messages_table = config.messages_table

    @classmethod
    async def connect(cls, config: StorageConfig) -> "SupabaseStore":
        """
        创建 Supabase 异步客户端并返回存储实例。

        异常:
            StoreError: 缺少地址/密钥或客户端创建失败（启动期致命错误）
        """
        if not config.supabase_url or not config.supabase_key:
            raise StoreError("Supabase URL and key are required")
        try:
            client = await acreate_client(config.supabase_url, config.supabase_key)
        except Exception as e:
            raise StoreError(f"Cannot create Supabase client: {e}") from e
        logger.info(f"Supabase store connected: {config.supabase_url}")
        return cls(client, config)

    # ===== instances =====

    async def get_instance(self, instance_id: str) -> Instance | None:
        try:
            resp = await (
                self.client.table(self.instances_table)
                .select("id, status, qr_code, system_prompt, webhook_url")
                .eq("id", instance_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StoreError(f"get_instance({instance_id}) failed: {e}") from e
        return Instance.from_row(resp.data[0]) if resp.data else None

    async def update_instance(self, instance_id: str, **fields: Any) -> None:
        values = {k: getattr(v, "value", v) for k, v in fields.items()}
        try:
            await self.client.table(self.instances_table).update(values).eq("id", instance_id).execute()
        except Exception as e:
            raise StoreError(f"update_instance({instance_id}) failed: {e}") from e

    async def list_instances(self, status: str | None = None) -> list[Instance]:
        query = self.client.table(self.instances_table).select("id, status, qr_code, system_prompt, webhook_url")
        if status is not None:
            query = query.eq("status", status)
        try:
            resp = await query.execute()
        except Exception as e:
            raise StoreError(f"list_instances failed: {e}") from e
        return [Instance.from_row(row) for row in resp.data or []]

    # ===== 凭证键值 =====

    async def read_key(self, session_id: str, key_id: str) -> KeyRecord | None:
        try:
            resp = await (
                self.client.table(self.sessions_table)
                .select("data")
                .eq("session_id", session_id)
                .eq("key_id", key_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StoreError(f"read_key({session_id}, {key_id}) failed: {e}") from e
        if not resp.data:
            return None
        return KeyRecord(key_id=key_id, data=resp.data[0].get("data"))

    async def write_key(self, session_id: str, key_id: str, data: Any) -> None:
        row = {
            "session_id": session_id,
            "key_id": key_id,
            "data": data,
            "updated_at": utc_now().isoformat(),
        }
        try:
            await self.client.table(self.sessions_table).upsert(row, on_conflict="session_id,key_id").execute()
        except Exception as e:
            raise StoreError(f"write_key({session_id}, {key_id}) failed: {e}") from e

    async def delete_key(self, session_id: str, key_id: str) -> None:
        try:
            await (
                self.client.table(self.sessions_table)
                .delete()
                .eq("session_id", session_id)
                .eq("key_id", key_id)
                .execute()
            )
        except Exception as e:
            raise StoreError(f"delete_key({session_id}, {key_id}) failed: {e}") from e

    async def delete_all_keys(self, session_id: str) -> None:
        try:
            await self.client.table(self.sessions_table).delete().eq("session_id", session_id).execute()
        except Exception as e:
            raise StoreError(f"delete_all_keys({session_id}) failed: {e}") from e

    # ===== messages =====

    async def append_message(self, entry: TranscriptEntry) -> None:
        row = {
            "instance_id": entry.instance_id,
            "content": entry.content,
            "sender": entry.sender,
            "is_from_me": entry.is_from_me,
            "created_at": entry.created_at.isoformat(),
        }
        try:
            await self.client.table(self.messages_table).insert(row).execute()
        except Exception as e:
            raise StoreError(f"append_message({entry.instance_id}) failed: {e}") from e

    async def recent_messages(
        self,
        instance_id: str,
        sender: str,
        limit: int,
        before: datetime | None = None,
    ) -> list[TranscriptEntry]:
        if limit <= 0:
            return []
        query = (
            self.client.table(self.messages_table)
            .select("instance_id, content, sender, is_from_me, created_at")
            .eq("instance_id", instance_id)
            .eq("sender", sender)
        )
        if before is not None:
            query = query.lt("created_at", before.isoformat())
        try:
            resp = await query.order("created_at", desc=True).limit(limit).execute()
        except Exception as e:
            raise StoreError(f"recent_messages({instance_id}, {sender}) failed: {e}") from e

        # 查询按新到旧取最近 limit 条，返回前翻转为旧到新
        entries = [
            TranscriptEntry(
                instance_id=row["instance_id"],
                sender=row["sender"],
                content=row["content"],
                is_from_me=bool(row["is_from_me"]),
                created_at=parse_timestamp(row["created_at"]),
            )
            for row in resp.data or []
        ]
        entries.reverse()
        return entries


def parse_timestamp(value: str) -> datetime:
    """解析 created_at；不带时区的值按 UTC 处理，保证与 utc_now() 可比较。"""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
