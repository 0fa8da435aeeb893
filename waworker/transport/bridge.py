"""
桥接传输实现 - 通过 WebSocket 驱动 Node.js 协议桥接服务。

架构：
    waworker (Python) <-> WebSocket <-> Node.js Bridge (@whiskeysockets/baileys) <-> WhatsApp Web

每个实例的每次连接尝试都使用一条独立的 WebSocket 连接，
桥接服务在这条连接上为该实例创建一个 baileys socket。
所有帧都是 JSON，二进制字段使用 buffer_json 的 "Buffer + base64" 占位格式。

消息协议（Python → Bridge）：
- auth            : {"type": "auth", "token": ...}，配置了令牌时首先发送
- start           : {"type": "start", "instanceId", "creds", "options"}
- send            : {"type": "send", "requestId", "to", "text"}
- pairing-code    : {"type": "pairing-code", "requestId", "phoneNumber"}
- keys.result     : 对 keys.get 的应答 {"requestId", "data": {id: 值}}
- keys.ack        : 对 keys.set 的应答 {"requestId"}
- end             : 主动结束

消息协议（Bridge → Python）：
- qr              : {"qr": "..."}
- connection      : {"connection": "open" | "close", "statusCode"?}
- creds.update    : {"creds": {...}}，增量字段
- messages.upsert : {"messages": [...], "kind": "notify" | "append"}
- keys.get        : {"requestId", "keyType", "ids": [...]}
- keys.set        : {"requestId", "data": {类别: {id: 值或 null}}}
- response        : {"requestId", "ok": bool, "result"?, "error"?}
- error           : {"error": "..."}
"""

import asyncio
import json
import uuid
from typing import Any, AsyncIterator

import websockets
from loguru import logger

from waworker.auth import buffer_json
from waworker.auth.state import AppStateSyncKeyData, AuthState
from waworker.transport.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredsUpdated,
    MessagesUpsert,
    QrEvent,
    Transport,
    TransportClosedError,
    TransportError,
    TransportEvent,
    TransportOptions,
)


class BridgeTransport(Transport):
    """
    基于 WebSocket 桥接服务的协议连接。

    内部结构：
    - _reader        : 读取循环任务，把桥接帧翻译为事件放入 _events 队列
    - _pending       : 等待 response 帧的请求 {requestId: Future}
    - _key_tasks     : 正在处理的 keys.get / keys.set 请求任务
    """

    def __init__(
        self,
        instance_id: str,
        auth: AuthState,
        options: TransportOptions,
        url: str,
        token: str = "",
    ):
        super().__init__(instance_id, auth, options)
        self.url = url
        self.token = token
        self._ws = None
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._pending: dict[str, asyncio.Future] = {}
        self._key_tasks: set[asyncio.Task] = set()
        self._reader: asyncio.Task | None = None
        self._closing = False      # 我方主动关闭
        self._close_emitted = False

    async def connect(self) -> None:
        self._ws = await websockets.connect(self.url, max_size=None)
        if self.token:
            await self._send({"type": "auth", "token": self.token})
        await self._send({
            "type": "start",
            "instanceId": self.instance_id,
            "creds": self.auth.creds,
            "options": {
                "browser": self.options.browser,
                "connectTimeoutMs": int(self.options.connect_timeout_s * 1000),
                "syncFullHistory": self.options.sync_full_history,
                "markOnlineOnConnect": self.options.mark_online_on_connect,
            },
        })
        self._reader = asyncio.create_task(self._read_loop())
        logger.debug(f"[{self.instance_id}] Bridge connected at {self.url}")

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, ConnectionClosed):
                return

    async def send_text(self, to: str, text: str) -> None:
        await self._request({"type": "send", "to": to, "text": text})

    async def request_pairing_code(self, phone_number: str) -> str:
        result = await self._request({"type": "pairing-code", "phoneNumber": phone_number})
        code = (result or {}).get("code")
        if not code:
            raise TransportError("Bridge returned no pairing code")
        return code

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        if self._ws is not None:
            try:
                await self._send({"type": "end"})
            except Exception:
                pass  # 连接可能已断开，主动关闭是尽力而为
            await self._ws.close()

        if self._reader is not None:
            self._reader.cancel()
        for task in list(self._key_tasks):
            task.cancel()
        self._fail_pending(TransportClosedError("Transport closed"))

    # ===== 内部实现 =====

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportClosedError("Bridge not connected")
        await self._ws.send(buffer_json.dumps(payload))

    async def _request(self, payload: dict[str, Any]) -> Any:
        """发送带 requestId 的请求，等待对应的 response 帧（带超时）。"""
        if self._closing or self._close_emitted:
            raise TransportClosedError("Transport closed")

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({**payload, "requestId": request_id})
            return await asyncio.wait_for(future, timeout=self.options.request_timeout_s)
        finally:
            self._pending.pop(request_id, None)

    def _emit(self, event: TransportEvent) -> None:
        if self._close_emitted:
            return
        if isinstance(event, ConnectionClosed):
            if self._closing:
                return
            self._close_emitted = True
        self._events.put_nowait(event)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _read_loop(self) -> None:
        """
        读取循环：逐帧解析桥接消息。

        桥接连接本身断开时，补发一个不带状态码的 ConnectionClosed，
        连接状态机会将其视为可重连的瞬时故障。
        """
        reason = "bridge connection closed"
        try:
            async for raw in self._ws:
                try:
                    data = buffer_json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"[{self.instance_id}] Invalid JSON from bridge: {str(raw)[:100]}")
                    continue
                try:
                    self._dispatch(data)
                except Exception as e:
                    logger.error(f"[{self.instance_id}] Error handling bridge frame: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"bridge connection error: {e}"
            logger.warning(f"[{self.instance_id}] {reason}")
        finally:
            self._fail_pending(TransportClosedError(reason))
            self._emit(ConnectionClosed(status_code=None, reason=reason))

    def _dispatch(self, data: dict[str, Any]) -> None:
        msg_type = data.get("type")

        if msg_type == "qr":
            self._emit(QrEvent(qr=data["qr"]))

        elif msg_type == "connection":
            connection = data.get("connection")
            if connection == "open":
                self._emit(ConnectionOpened())
            elif connection == "close":
                status_code = data.get("statusCode")
                self._emit(ConnectionClosed(
                    status_code=int(status_code) if status_code is not None else None,
                    reason=data.get("reason"),
                ))

        elif msg_type == "creds.update":
            # 桥接服务只发送变化的字段，合并进同一个 creds 对象
            self.auth.creds.update(data.get("creds") or {})
            self._emit(CredsUpdated(creds=self.auth.creds))

        elif msg_type == "messages.upsert":
            self._emit(MessagesUpsert(messages=data.get("messages") or [], kind=data.get("kind", "notify")))

        elif msg_type == "keys.get":
            self._spawn(self._answer_keys_get(data))

        elif msg_type == "keys.set":
            self._spawn(self._answer_keys_set(data))

        elif msg_type == "response":
            future = self._pending.get(data.get("requestId"))
            if future is None or future.done():
                return
            if data.get("ok", True):
                future.set_result(data.get("result"))
            else:
                future.set_exception(TransportError(data.get("error") or "request rejected"))

        elif msg_type == "error":
            logger.error(f"[{self.instance_id}] Bridge error: {data.get('error')}")

        else:
            logger.debug(f"[{self.instance_id}] Ignoring bridge frame type {msg_type}")

    def _spawn(self, coro) -> None:
        # 按接收顺序创建任务，凭证存储的每键锁按任务启动顺序获取，保证同键写入不乱序
        task = asyncio.create_task(coro)
        self._key_tasks.add(task)
        task.add_done_callback(self._key_tasks.discard)

    async def _answer_keys_get(self, data: dict[str, Any]) -> None:
        values = await self.auth.keys.get(data["keyType"], list(data.get("ids") or []))
        payload = {
            key_id: value.to_object() if isinstance(value, AppStateSyncKeyData) else value
            for key_id, value in values.items()
        }
        await self._reply({"type": "keys.result", "requestId": data.get("requestId"), "data": payload})

    async def _answer_keys_set(self, data: dict[str, Any]) -> None:
        await self.auth.keys.set(data.get("data") or {})
        await self._reply({"type": "keys.ack", "requestId": data.get("requestId")})

    async def _reply(self, payload: dict[str, Any]) -> None:
        try:
            await self._send(payload)
        except Exception as e:
            logger.warning(f"[{self.instance_id}] Failed to answer bridge request: {e}")


def bridge_transport_factory(url: str, token: str = ""):
    """
    构造一个绑定了桥接地址的 TransportFactory。

    参数:
        url: 桥接服务 WebSocket 地址
        token: 桥接认证令牌

    返回:
        (instance_id, auth, options) -> BridgeTransport
    """
    def factory(instance_id: str, auth: AuthState, options: TransportOptions) -> BridgeTransport:
        return BridgeTransport(instance_id, auth, options, url=url, token=token)

    return factory
