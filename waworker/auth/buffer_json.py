"""
二进制占位编解码模块 - 让含 bytes 的凭证数据可以无损地存进 JSON。

协议层的凭证（噪声密钥、身份密钥、预共享密钥等）大量包含二进制字段，
而 JSON 只能表示文本。本模块提供一对对称的转换：

- encode：把任意嵌套结构中的每个 bytes 替换为占位对象
  {"type": "Buffer", "data": "<base64>"}
- decode：把占位对象还原为 bytes

占位格式与 baileys 的 BufferJSON.replacer / reviver 一致，
因此桥接服务写入的数据和 Python 端写入的数据可以互相读取。

【不变式】
对任意由 dict/list/str/int/float/bool/None/bytes 组成的值 v，
decode(encode(v)) == v。
"""

import base64
import json
from typing import Any

BUFFER_MARKER = "Buffer"


def encode(value: Any) -> Any:
    """
    递归地把 bytes 替换为带标记的 base64 占位对象。

    参数:
        value: 任意嵌套的 Python 值

    返回:
        只包含 JSON 可表示类型的等价结构
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": BUFFER_MARKER, "data": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {str(k): encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]
    return value


def decode(value: Any) -> Any:
    """
    递归地把占位对象还原为 bytes。

    除 base64 字符串外，也接受 Node.js Buffer.toJSON() 产生的整数数组形式
    {"type": "Buffer", "data": [1, 2, 3]}，桥接服务旧数据可能是这种格式。

    参数:
        value: 由 encode（或 BufferJSON.replacer）产生的结构

    返回:
        还原了 bytes 字段的结构
    """
    if isinstance(value, dict):
        if _is_buffer(value):
            data = value["data"]
            if isinstance(data, str):
                return base64.b64decode(data)
            return bytes(data)
        return {k: decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode(item) for item in value]
    return value


def _is_buffer(value: dict[str, Any]) -> bool:
    """判断一个字典是否为二进制占位对象（恰好两个键：type 与 data）。"""
    return (
        value.get("type") == BUFFER_MARKER
        and "data" in value
        and len(value) == 2
        and isinstance(value["data"], (str, list))
    )


def dumps(value: Any) -> str:
    """encode 后序列化为 JSON 字符串。"""
    return json.dumps(encode(value))


def loads(raw: str | bytes) -> Any:
    """解析 JSON 字符串后 decode。"""
    return decode(json.loads(raw))
