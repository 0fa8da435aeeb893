"""
协议传输层契约定义模块。

WhatsApp Web 协议本身（帧、加密握手、消息序列化）不在本项目范围内，
由外部协议库完成。本模块只定义 waworker 驱动协议库所需的窄契约：

- 命令（我方 → 协议层）：connect / send_text / request_pairing_code / close
- 事件（协议层 → 我方）：通过 events() 异步迭代器逐个产出，
  连接状态机用一个消费循环依次处理，不使用回调注册
- 凭证：协议层只通过 AuthState（AuthStore 接口）读写凭证

事件类型：
- QrEvent           : 收到待扫描的二维码内容
- ConnectionOpened  : 链路已建立（登录完成）
- ConnectionClosed  : 链路已关闭，可能携带远端状态码；这是事件流的最后一个事件
- CredsUpdated      : 主凭证已更新（需要立即持久化）
- MessagesUpsert    : 一批入站/同步消息

【Java 开发者类比】
- Transport 相当于一个 interface，BridgeTransport 是它基于 WebSocket 的实现
- events() 相当于一个 BlockingQueue 的 take() 循环
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, AsyncIterator, Callable

from waworker.auth.state import AuthState


class TransportError(Exception):
    """协议传输层故障（请求被拒绝、桥接服务报错等）。"""


class TransportClosedError(TransportError):
    """在已关闭的连接上发起请求。"""


class DisconnectReason(IntEnum):
    """远端关闭连接时携带的状态码（与 baileys 的 DisconnectReason 一致）。"""
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


@dataclass
class QrEvent:
    qr: str


@dataclass
class ConnectionOpened:
    pass


@dataclass
class ConnectionClosed:
    status_code: int | None = None
    reason: str | None = None


@dataclass
class CredsUpdated:
    creds: dict[str, Any]


@dataclass
class MessagesUpsert:
    messages: list[dict[str, Any]] = field(default_factory=list)
    kind: str = "notify"  # notify = 实时新消息；append = 历史同步


TransportEvent = QrEvent | ConnectionOpened | ConnectionClosed | CredsUpdated | MessagesUpsert


@dataclass
class TransportOptions:
    """建立协议连接时传给协议层的选项。"""
    browser: list[str] = field(default_factory=lambda: ["Ubuntu", "Chrome", "20.0.04"])
    connect_timeout_s: float = 60.0
    request_timeout_s: float = 30.0
    sync_full_history: bool = False
    mark_online_on_connect: bool = False


class Transport(ABC):
    """
    协议连接抽象基类。

    一个 Transport 对象只对应一次连接尝试：关闭后不可复用，
    重连由会话注册表创建新的 Transport 完成。

    属性:
        instance_id: 所属实例
        auth: 认证状态（协议层通过 auth.keys 读写凭证）
        options: 连接选项
    """

    def __init__(self, instance_id: str, auth: AuthState, options: TransportOptions):
        self.instance_id = instance_id
        self.auth = auth
        self.options = options

    @abstractmethod
    async def connect(self) -> None:
        """建立连接并开始产出事件。调用方负责施加超时。"""

    @abstractmethod
    def events(self) -> AsyncIterator[TransportEvent]:
        """
        事件异步迭代器。

        产出 ConnectionClosed 后迭代结束。
        """

    @abstractmethod
    async def send_text(self, to: str, text: str) -> None:
        """向指定 JID 发送一条文本消息。"""

    @abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        """
        为已规范化（纯数字）的手机号申请配对码。

        返回:
            配对码文本（如 "ABC-123"）
        """

    @abstractmethod
    async def close(self) -> None:
        """主动关闭连接（尽力而为）。主动关闭后不再产出 ConnectionClosed。"""


TransportFactory = Callable[[str, AuthState, TransportOptions], Transport]
