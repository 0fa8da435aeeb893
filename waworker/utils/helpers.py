"""
工具函数集合 - waworker 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir, get_data_path
- 字符串工具：truncate_string, normalize_phone_number
- 时间工具：utc_now
"""

import re
from datetime import datetime, timezone
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """确保目录存在，不存在则递归创建，并原样返回路径。"""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 waworker 数据目录（~/.waworker）。自动创建不存在的目录。"""
    return ensure_dir(Path.home() / ".waworker")


def utc_now() -> datetime:
    """获取带时区的当前 UTC 时间。"""
    return datetime.now(timezone.utc)


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """
    截断字符串到指定最大长度，超出时添加后缀。

    参数:
        s: 原始字符串
        max_len: 最大长度（包含后缀），默认 100
        suffix: 截断后缀，默认 "..."

    返回:
        截断后的字符串
    """
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def normalize_phone_number(phone_number: str) -> str:
    """
    规范化手机号：去掉所有非数字字符。

    例: "+1 555-0100" → "15550100"
    """
    return re.sub(r"\D", "", phone_number)

