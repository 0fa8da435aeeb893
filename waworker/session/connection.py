"""
连接状态机模块 - 驱动单个实例的一次协议连接尝试。

状态流转：
    Initializing ──QR──────────→ AwaitingQr ─────────┐
         │                                           ├─open─→ Connected ─close─→ Closed
         └──手机号且未注册──→ AwaitingPairingCode ───┘
    Closed 细分为 Reconnecting（稍后重连）| Disconnected | Errored（终止，不重连）

【驱动方式】
每个连接只有一个事件消费循环（run），依次 await 协议层事件：
- QrEvent           : 非配对码模式下持久化 status=scanning 与二维码（覆盖旧值）
- CredsUpdated      : 立即持久化主凭证（无论当前状态），这是重启免扫码的关键
- ConnectionOpened  : 清空二维码/配对码，持久化 status=connected
- MessagesUpsert    : 每批实时消息交给路由器，独立任务处理
- ConnectionClosed  : 按状态码决定重连或终止，交给注册表处理

配对码模式：调用方提供了手机号且凭证尚未注册时，等待一个固定的稳定延迟后，
为去掉非数字字符的手机号申请一次配对码（每次连接尝试只申请一次），
配对码与二维码写入同一个 qr_code 字段，控制面无需区分。

【Java 开发者类比】
- Connection 相当于一个带状态字段的 Runnable，run() 是它的事件循环
- classify_close() 是一个纯函数，相当于策略表查找
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger

from waworker.auth.store import CredentialStore
from waworker.config.schema import SessionConfig
from waworker.router.router import MessageRouter
from waworker.storage.base import InstanceStatus, Store, StoreError
from waworker.transport.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredsUpdated,
    DisconnectReason,
    MessagesUpsert,
    QrEvent,
    Transport,
    TransportEvent,
)
from waworker.utils.helpers import normalize_phone_number


class ConnectionState(str, Enum):
    """连接状态机的状态。"""
    INITIALIZING = "initializing"
    AWAITING_QR = "awaiting_qr"
    AWAITING_PAIRING_CODE = "awaiting_pairing_code"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"


@dataclass(frozen=True)
class CloseDecision:
    """
    连接关闭后的处理决定。

    属性:
        state: 关闭后进入的状态
        status: 需要持久化的实例状态（None 表示不改写）
        reconnect: 是否安排重连
        reset_credentials: 是否清空该实例的全部凭证
    """
    state: ConnectionState
    status: InstanceStatus | None = None
    reconnect: bool = False
    reset_credentials: bool = False


# 凭证被服务端拒绝：重连只会被继续拒绝，必须终止
AUTH_FAILURE_CODES = frozenset({
    DisconnectReason.FORBIDDEN,
    DisconnectReason.MULTIDEVICE_MISMATCH,
})


def classify_close(status_code: int | None) -> CloseDecision:
    """
    根据远端状态码决定关闭后的去向。

    - 401 已登出：终止（Errored），持久化 error_401，并清空凭证以便下次启动重新扫码
    - 403 / 411 凭证被拒：终止（Errored），持久化 error_401
    - 440 被其他客户端顶替：终止（Disconnected），持久化 disconnected，避免两端互相抢占
    - 其他（含无状态码、超时、服务不可用、要求重启）：Reconnecting
    """
    if status_code == DisconnectReason.LOGGED_OUT:
        return CloseDecision(ConnectionState.ERRORED, InstanceStatus.ERROR_401, reset_credentials=True)
    if status_code in AUTH_FAILURE_CODES:
        return CloseDecision(ConnectionState.ERRORED, InstanceStatus.ERROR_401)
    if status_code == DisconnectReason.CONNECTION_REPLACED:
        return CloseDecision(ConnectionState.DISCONNECTED, InstanceStatus.DISCONNECTED)
    return CloseDecision(ConnectionState.RECONNECTING, reconnect=True)


class Connection:
    """
    单个实例的一次连接尝试。

    属性:
        instance_id: 所属实例
        generation: 注册表分配的代号，用于识别过期的关闭回调和重连定时器
        phone_number: 配对码模式的手机号（None 表示二维码模式）
        transport: 本次尝试使用的协议连接
        credentials: 该实例的凭证存储适配器
        state: 当前状态
    """

    def __init__(
        self,
        instance_id: str,
        generation: int,
        transport: Transport,
        credentials: CredentialStore,
        store: Store,
        router: MessageRouter,
        config: SessionConfig,
        on_closed: Callable[["Connection", CloseDecision], Awaitable[None]],
        phone_number: str | None = None,
    ):
        self.instance_id = instance_id
        self.generation = generation
        self.phone_number = phone_number
        self.transport = transport
        self.credentials = credentials
        self.store = store
        self.router = router
        self.config = config
        self.on_closed = on_closed
        self.state = ConnectionState.INITIALIZING
        self.task: asyncio.Task | None = None
        self._pairing_task: asyncio.Task | None = None
        self._batch_tasks: set[asyncio.Task] = set()
        self._transport_closed = False

    @property
    def pairing_mode(self) -> bool:
        return bool(self.phone_number)

    def start(self) -> asyncio.Task:
        """在后台任务中运行事件循环。"""
        self.task = asyncio.create_task(self.run(), name=f"connection:{self.instance_id}:{self.generation}")
        return self.task

    async def run(self) -> None:
        """
        事件消费循环（连接任务的主体）。

        建立连接超时、协议层异常都视为不带状态码的关闭，进入重连判定。
        """
        decision: CloseDecision | None = None
        try:
            await asyncio.wait_for(self.transport.connect(), timeout=self.transport.options.connect_timeout_s)

            if self.pairing_mode and not self.transport.auth.registered:
                self._pairing_task = asyncio.create_task(self._request_pairing_code())

            async for event in self.transport.events():
                decision = await self._handle_event(event)
                if decision is not None:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.instance_id}] Connection failed: {type(e).__name__}: {e}")
        finally:
            if self._pairing_task is not None and not self._pairing_task.done():
                self._pairing_task.cancel()

        if decision is None:
            decision = classify_close(None)
        await self._finish(decision)

    async def _handle_event(self, event: TransportEvent) -> CloseDecision | None:
        """处理一个协议层事件；返回 CloseDecision 表示连接已关闭。"""
        if isinstance(event, CredsUpdated):
            await self.credentials.persist_credentials(event.creds)

        elif isinstance(event, QrEvent):
            if self.pairing_mode:
                logger.debug(f"[{self.instance_id}] Ignoring QR code in pairing-code mode")
                return None
            logger.info(f"[{self.instance_id}] QR code received")
            self.state = ConnectionState.AWAITING_QR
            await self._persist(status=InstanceStatus.SCANNING, qr_code=event.qr)

        elif isinstance(event, ConnectionOpened):
            logger.info(f"[{self.instance_id}] Connected")
            self.state = ConnectionState.CONNECTED
            if self._pairing_task is not None and not self._pairing_task.done():
                self._pairing_task.cancel()
            await self._persist(status=InstanceStatus.CONNECTED, qr_code=None)

        elif isinstance(event, MessagesUpsert):
            if event.kind == "notify" and event.messages:
                self._spawn_batch(event.messages)

        elif isinstance(event, ConnectionClosed):
            decision = classify_close(event.status_code)
            logger.info(
                f"[{self.instance_id}] Disconnected. Code: {event.status_code}. "
                f"Reconnect: {decision.reconnect}"
            )
            return decision

        return None

    async def _request_pairing_code(self) -> None:
        """等待协议层稳定后申请一次配对码，并像二维码一样持久化。"""
        await asyncio.sleep(self.config.pairing_delay_s)
        if self.transport.auth.registered or self.state == ConnectionState.CONNECTED:
            return

        number = normalize_phone_number(self.phone_number or "")
        if not number:
            logger.error(f"[{self.instance_id}] Phone number {self.phone_number!r} has no digits")
            return

        try:
            code = await asyncio.wait_for(
                self.transport.request_pairing_code(number),
                timeout=self.transport.options.request_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.instance_id}] Pairing code request failed: {e}")
            return

        logger.info(f"[{self.instance_id}] Pairing code issued for {number}")
        self.state = ConnectionState.AWAITING_PAIRING_CODE
        await self._persist(status=InstanceStatus.PAIRING_CODE, qr_code=code)

    def _spawn_batch(self, messages: list[dict]) -> None:
        task = asyncio.create_task(self.router.handle_batch(self.instance_id, messages, self.send_text))
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)

    async def send_text(self, to: str, text: str) -> None:
        """通过本连接发送文本（带超时）。"""
        await asyncio.wait_for(
            self.transport.send_text(to, text),
            timeout=self.transport.options.request_timeout_s,
        )

    async def _finish(self, decision: CloseDecision) -> None:
        self.state = decision.state
        await self._close_transport()
        if decision.reset_credentials:
            await self.credentials.clear()
        if decision.status is not None:
            await self._persist(status=decision.status, qr_code=None)
        await self.on_closed(self, decision)

    async def _persist(self, **fields) -> None:
        """写入实例状态（尽力而为，存储故障只记录日志）。"""
        try:
            await self.store.update_instance(self.instance_id, **fields)
        except StoreError as e:
            logger.warning(f"[{self.instance_id}] Failed to persist instance status: {e}")

    async def _close_transport(self) -> None:
        if self._transport_closed:
            return
        self._transport_closed = True
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"[{self.instance_id}] Error closing transport: {e}")

    async def terminate(self) -> None:
        """
        终止本连接（尽力而为，异常被吞掉）。

        取消事件循环任务与消息批次任务，然后关闭协议连接。
        被取消的事件循环不会执行关闭回调，因此不会触发重连。
        """
        tasks = [t for t in (self.task, self._pairing_task, *self._batch_tasks) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"[{self.instance_id}] Task ended with error during termination: {e}")
        await self._close_transport()
