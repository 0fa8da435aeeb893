"""
会话注册表模块 - 进程内所有实例连接的唯一所有者。

【核心保证】
1. 每个 instance_id 同一时刻最多一个活跃连接：
   启动前先在该实例的锁内终止并移除旧连接，新连接构造成功后才登记
2. 代号（generation）：每次 start / stop 都让该实例的代号加一，
   重连定时器、排队中的启动任务、连接的关闭回调在生效前都会核对代号，
   过期的直接作废。因此 stop 之后不会再冒出"僵尸重连"
3. 构造失败（凭证读取、协议层工厂抛错等）只记录日志，注册表保持原样

【调用方式】
- start() 立即返回（后台任务执行），控制面据此返回 "initializing"
- stop() 等待终止完成，并无条件把实例状态写为 disconnected
- shutdown() 进程退出时调用：终止全部连接，不改写任何实例状态，
  下次启动时可通过 resume() 恢复状态为 connected 的实例

【Java 开发者类比】
- SessionRegistry 相当于 ConcurrentHashMap<String, SessionHandle> + 每键一把锁
- generation 相当于乐观锁的版本号
"""

import asyncio
from dataclasses import dataclass

from loguru import logger

from waworker.auth.state import AuthState
from waworker.auth.store import CredentialStore
from waworker.config.schema import SessionConfig
from waworker.router.router import MessageRouter
from waworker.session.connection import CloseDecision, Connection
from waworker.storage.base import InstanceStatus, Store, StoreError
from waworker.transport.base import TransportFactory, TransportOptions


@dataclass
class SessionHandle:
    """注册表中的一条记录：某个实例当前的活跃连接。"""
    instance_id: str
    generation: int
    connection: Connection
    phone_number: str | None = None


class SessionRegistry:
    """
    会话注册表。

    属性:
        store: 持久化存储
        router: 入站消息路由器（所有连接共享）
        transport_factory: 为每次连接尝试创建协议连接
        options: 协议连接选项
        config: 会话生命周期配置（重连延迟、配对码等待）
        cache_credentials: 是否为凭证存储启用进程内缓存
    """

    def __init__(
        self,
        store: Store,
        router: MessageRouter,
        transport_factory: TransportFactory,
        options: TransportOptions | None = None,
        config: SessionConfig | None = None,
        cache_credentials: bool = True,
    ):
        self.store = store
        self.router = router
        self.transport_factory = transport_factory
        self.options = options or TransportOptions()
        self.config = config or SessionConfig()
        self.cache_credentials = cache_credentials

        self._handles: dict[str, SessionHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}
        self._credentials: dict[str, CredentialStore] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()

    # ===== 查询 =====

    def is_active(self, instance_id: str) -> bool:
        """实例当前是否持有活跃连接。"""
        return instance_id in self._handles

    @property
    def active_count(self) -> int:
        return len(self._handles)

    def get(self, instance_id: str) -> SessionHandle | None:
        return self._handles.get(instance_id)

    # ===== 生命周期 =====

    def start(self, instance_id: str, phone_number: str | None = None) -> asyncio.Task:
        """
        启动（或重启）一个实例的连接，立即返回。

        参数:
            instance_id: 实例 ID
            phone_number: 提供时使用配对码登录，否则使用二维码

        返回:
            执行启动的后台任务（调用方通常不需要等待它）
        """
        generation = self._bump(instance_id)
        self._cancel_timer(instance_id)
        task = asyncio.create_task(self._start(instance_id, phone_number, generation, initial=True))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def stop(self, instance_id: str, reset: bool = False) -> None:
        """
        停止一个实例：终止连接、作废重连定时器，并把状态写为 disconnected。

        参数:
            instance_id: 实例 ID
            reset: 为 True 时同时清空该实例的全部凭证（下次启动需要重新登录）
        """
        self._bump(instance_id)
        self._cancel_timer(instance_id)

        async with self._lock_for(instance_id):
            await self._evict(instance_id)
            if reset:
                await self._credentials_for(instance_id).clear()
            await self._persist(instance_id, status=InstanceStatus.DISCONNECTED, qr_code=None)

        logger.info(f"[{instance_id}] Session stopped{' and credentials reset' if reset else ''}")

    async def resume(self) -> list[str]:
        """
        恢复上次进程退出前处于 connected 状态的实例（凭证仍在存储中，无需重新登录）。

        返回:
            已发起启动的实例 ID 列表
        """
        try:
            instances = await self.store.list_instances(status=InstanceStatus.CONNECTED.value)
        except StoreError as e:
            logger.error(f"Cannot list instances to resume: {e}")
            return []

        for instance in instances:
            self.start(instance.id)
        if instances:
            logger.info(f"Resuming {len(instances)} session(s)")
        return [i.id for i in instances]

    async def shutdown(self) -> None:
        """终止全部连接与定时器（不改写实例状态）。"""
        for instance_id in list(self._generations):
            self._bump(instance_id)
            self._cancel_timer(instance_id)

        pending = list(self._pending)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        handles = list(self._handles.values())
        self._handles.clear()
        await asyncio.gather(*(h.connection.terminate() for h in handles), return_exceptions=True)
        logger.info(f"Session registry shut down ({len(handles)} session(s) terminated)")

    # ===== 内部实现 =====

    def _bump(self, instance_id: str) -> int:
        generation = self._generations.get(instance_id, 0) + 1
        self._generations[instance_id] = generation
        return generation

    def _is_current(self, instance_id: str, generation: int) -> bool:
        return self._generations.get(instance_id) == generation

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        return lock

    def _credentials_for(self, instance_id: str) -> CredentialStore:
        # 同一实例的所有连接尝试共用一个凭证适配器（同一套键锁和缓存）
        credentials = self._credentials.get(instance_id)
        if credentials is None:
            credentials = CredentialStore(instance_id, self.store, cache=self.cache_credentials)
            self._credentials[instance_id] = credentials
        return credentials

    async def _start(self, instance_id: str, phone_number: str | None, generation: int, initial: bool) -> None:
        try:
            async with self._lock_for(instance_id):
                if not self._is_current(instance_id, generation):
                    logger.debug(f"[{instance_id}] Start superseded by a newer request")
                    return

                await self._evict(instance_id)
                if initial:
                    await self._persist(instance_id, status=InstanceStatus.INITIALIZING, qr_code=None)

                credentials = self._credentials_for(instance_id)
                creds = await credentials.load_credentials()
                auth = AuthState(creds=creds, keys=credentials)
                transport = self.transport_factory(instance_id, auth, self.options)

                connection = Connection(
                    instance_id=instance_id,
                    generation=generation,
                    transport=transport,
                    credentials=credentials,
                    store=self.store,
                    router=self.router,
                    config=self.config,
                    on_closed=self._on_connection_closed,
                    phone_number=phone_number,
                )
                self._handles[instance_id] = SessionHandle(instance_id, generation, connection, phone_number)
                connection.start()

            mode = "pairing code" if phone_number else "QR"
            logger.info(f"[{instance_id}] Session starting ({mode})")
        except Exception as e:
            logger.error(f"[{instance_id}] Failed to start session: {e}")

    async def _evict(self, instance_id: str) -> None:
        """移除并终止实例的现有连接（必须在该实例的锁内调用）。"""
        handle = self._handles.pop(instance_id, None)
        if handle is None:
            return
        try:
            await handle.connection.terminate()
        except Exception as e:
            logger.debug(f"[{instance_id}] Error terminating previous connection: {e}")

    async def _on_connection_closed(self, connection: Connection, decision: CloseDecision) -> None:
        """连接关闭回调：移除登记，必要时安排一次重连。"""
        instance_id = connection.instance_id
        async with self._lock_for(instance_id):
            handle = self._handles.get(instance_id)
            if handle is None or handle.connection is not connection:
                return
            del self._handles[instance_id]

        if decision.reconnect and self._is_current(instance_id, connection.generation):
            self._schedule_reconnect(instance_id, connection.phone_number, connection.generation)

    def _schedule_reconnect(self, instance_id: str, phone_number: str | None, generation: int) -> None:
        delay = self.config.reconnect_delay_s
        logger.info(f"[{instance_id}] Reconnecting in {delay}s...")

        async def reconnect_later() -> None:
            await asyncio.sleep(delay)
            if not self._is_current(instance_id, generation):
                logger.debug(f"[{instance_id}] Reconnect cancelled by a newer request")
                return
            await self._start(instance_id, phone_number, self._bump(instance_id), initial=False)

        self._cancel_timer(instance_id)
        timer = asyncio.create_task(reconnect_later())
        self._timers[instance_id] = timer
        timer.add_done_callback(lambda t: self._forget_timer(instance_id, t))

    def _forget_timer(self, instance_id: str, timer: asyncio.Task) -> None:
        if self._timers.get(instance_id) is timer:
            del self._timers[instance_id]

    def _cancel_timer(self, instance_id: str) -> None:
        timer = self._timers.pop(instance_id, None)
        if timer is not None and not timer.done():
            timer.cancel()

    async def _persist(self, instance_id: str, **fields) -> None:
        try:
            await self.store.update_instance(instance_id, **fields)
        except StoreError as e:
            logger.warning(f"[{instance_id}] Failed to persist instance status: {e}")
