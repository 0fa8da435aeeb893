"""
凭证存储适配器模块 - 把协议层的键值凭证请求翻译为外部存储的读写。

【数据流】
协议层 keys.get / keys.set / creds.update
    → CredentialStore（编码/解码 + 缓存 + 写入顺序控制）
    → Store（Supabase 或内存）

【关键语义】
1. "没有这一行"与"读取失败"不同：前者静默返回 None，后者记录日志并计数，
   但对协议层而言两者都表现为"凭证未知"，从而促使协议层重新获取（如重新登录）
2. set() 中值为 None 表示删除，其余为 upsert；同一次调用内的各键并发执行，
   全部完成（或失败）后才返回
3. 同一个 (实例, 键) 的写入按发出顺序串行执行（每键一把 asyncio.Lock，FIFO）
4. 可选的进程内缓存与存储在每次写入/删除时同步更新，存储写失败时缓存失效，
   保证进程生命周期内二者不会分叉
5. app-state-sync-key 类别读取后必须重建为 AppStateSyncKeyData
"""

import asyncio
from typing import Any

from loguru import logger

from waworker.auth import buffer_json
from waworker.auth.state import (
    APP_STATE_SYNC_KEY,
    CREDS_KEY,
    AppStateSyncKeyData,
    AuthStore,
    KeyUpdates,
    init_auth_creds,
)
from waworker.storage.base import Store, StoreError


class CredentialStore(AuthStore):
    """
    单个实例的凭证存储适配器。

    属性:
        instance_id: 所属实例（即键值表中的 session_id）
        store: 底层持久化存储
        read_failures: 读取失败计数（后端故障，不含"不存在"）
        write_failures: 写入/删除失败计数
    """

    def __init__(self, instance_id: str, store: Store, cache: bool = True):
        """
        参数:
            instance_id: 实例 ID
            store: 底层持久化存储
            cache: 是否启用进程内读穿透缓存
        """
        self.instance_id = instance_id
        self.store = store
        self._cache: dict[str, Any] | None = {} if cache else None
        self._locks: dict[str, asyncio.Lock] = {}
        self.read_failures = 0
        self.write_failures = 0

    def _lock_for(self, key_id: str) -> asyncio.Lock:
        lock = self._locks.get(key_id)
        if lock is None:
            lock = self._locks[key_id] = asyncio.Lock()
        return lock

    # ===== 单键读写 =====

    async def read(self, key_id: str) -> Any | None:
        """
        读取单个键（已解码）。

        返回:
            解码后的值；不存在、载荷为空或读取失败时返回 None
        """
        if self._cache is not None and key_id in self._cache:
            return self._cache[key_id]

        try:
            record = await self.store.read_key(self.instance_id, key_id)
        except StoreError as e:
            self.read_failures += 1
            logger.warning(f"[{self.instance_id}] Credential read failed for {key_id}: {e}")
            return None

        if record is None:
            logger.debug(f"[{self.instance_id}] Credential {key_id} absent")
            return None

        if record.data is None:
            logger.debug(f"[{self.instance_id}] Credential {key_id} has an empty payload")
            value = None
        else:
            value = buffer_json.decode(record.data)

        if self._cache is not None:
            self._cache[key_id] = value
        return value

    async def write(self, key_id: str, value: Any) -> None:
        """写入单个键。同一键的写入按调用顺序串行。"""
        if isinstance(value, AppStateSyncKeyData):
            value = value.to_object()
        async with self._lock_for(key_id):
            try:
                await self.store.write_key(self.instance_id, key_id, buffer_json.encode(value))
            except StoreError as e:
                self.write_failures += 1
                logger.warning(f"[{self.instance_id}] Credential write failed for {key_id}: {e}")
                if self._cache is not None:
                    self._cache.pop(key_id, None)
                return
            if self._cache is not None:
                self._cache[key_id] = value

    async def remove(self, key_id: str) -> None:
        """删除单个键。与写入共用同一把键锁。"""
        async with self._lock_for(key_id):
            try:
                await self.store.delete_key(self.instance_id, key_id)
            except StoreError as e:
                self.write_failures += 1
                logger.warning(f"[{self.instance_id}] Credential delete failed for {key_id}: {e}")
            # 删除失败时存储中可能仍有旧值，缓存同样失效，下次读取回源
            if self._cache is not None:
                self._cache.pop(key_id, None)

    # ===== AuthStore 接口 =====

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any | None]:
        values = await asyncio.gather(*(self.read(f"{key_type}-{key_id}") for key_id in ids))
        data: dict[str, Any | None] = {}
        for key_id, value in zip(ids, values):
            if key_type == APP_STATE_SYNC_KEY and value is not None:
                value = AppStateSyncKeyData.from_object(value)
            data[key_id] = value
        return data

    async def set(self, updates: KeyUpdates) -> None:
        tasks = []
        for category, entries in updates.items():
            for key_id, value in entries.items():
                key = f"{category}-{key_id}"
                tasks.append(self.remove(key) if value is None else self.write(key, value))
        await asyncio.gather(*tasks, return_exceptions=True)

    async def load_credentials(self) -> dict[str, Any]:
        creds = await self.read(CREDS_KEY)
        if isinstance(creds, dict):
            return creds
        logger.info(f"[{self.instance_id}] No stored credentials, starting a fresh login")
        creds = init_auth_creds()
        # 立即落盘，重连时沿用同一身份
        await self.persist_credentials(creds)
        return creds

    async def persist_credentials(self, creds: dict[str, Any]) -> None:
        await self.write(CREDS_KEY, creds)

    async def clear(self) -> None:
        """强制重置：删除该实例的全部凭证记录（存储与缓存一起清空）。"""
        try:
            await self.store.delete_all_keys(self.instance_id)
        except StoreError as e:
            self.write_failures += 1
            logger.warning(f"[{self.instance_id}] Credential reset failed: {e}")
        if self._cache is not None:
            self._cache.clear()
        logger.info(f"[{self.instance_id}] Credentials cleared")
