"""
入站消息类型定义模块 - 把协议层的原始消息对象标准化为路由器使用的数据结构。

协议层（baileys）产出的消息对象形如：
    {
        "key": {"remoteJid": "15550100@s.whatsapp.net", "fromMe": false, "id": "3EB0..."},
        "pushName": "Alice",
        "messageTimestamp": 1700000000,
        "message": {"conversation": "hi"} 或 {"extendedTextMessage": {"text": "hi"}}
    }

本模块只关心文本：优先取 message.conversation，其次取 message.extendedTextMessage.text；
取不到文本的消息（图片、语音、贴纸等）返回 None，由路由器忽略。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from waworker.utils.helpers import utc_now

# WhatsApp 状态（朋友圈）广播的虚拟 JID，不是会话
STATUS_BROADCAST_JID = "status@broadcast"


@dataclass
class InboundMessage:
    """
    入站消息 - 某个实例收到的一条对端文本消息。

    属性:
        instance_id: 收到消息的实例
        sender: 对端 JID（回复也发往这里）
        content: 消息文本
        message_id: 协议层消息 ID
        push_name: 对端昵称（可能为空）
        received_at: 接收时间，同时作为对话流水的写入时间
    """

    instance_id: str
    sender: str
    content: str
    message_id: str | None = None
    push_name: str | None = None
    received_at: datetime = field(default_factory=utc_now)


def extract_text(message: dict[str, Any] | None) -> str | None:
    """
    提取纯文本内容。

    返回:
        文本内容；没有可提取的文本时返回 None
    """
    if not message:
        return None
    text = message.get("conversation")
    if text:
        return text
    extended = message.get("extendedTextMessage") or {}
    return extended.get("text") or None


def parse_message(instance_id: str, raw: dict[str, Any]) -> InboundMessage | None:
    """
    把协议层原始消息解析为 InboundMessage。

    以下情况返回 None（路由器跳过）：
    - 我方自己发出的消息（fromMe，回声抑制）
    - 状态广播
    - 没有可提取的文本

    参数:
        instance_id: 收到消息的实例
        raw: 协议层原始消息对象

    返回:
        InboundMessage 或 None
    """
    key = raw.get("key") or {}
    if key.get("fromMe"):
        return None

    sender = key.get("remoteJid")
    if not sender or sender == STATUS_BROADCAST_JID:
        return None

    text = extract_text(raw.get("message"))
    if text is None:
        logger.debug(f"[{instance_id}] Ignoring message without text from {sender}")
        return None

    return InboundMessage(
        instance_id=instance_id,
        sender=sender,
        content=text,
        message_id=key.get("id"),
        push_name=raw.get("pushName"),
    )
