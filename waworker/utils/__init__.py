"""
工具函数模块 - 提供 waworker 项目全局通用的辅助函数。
"""

from waworker.utils.helpers import ensure_dir, get_data_path, normalize_phone_number

__all__ = ["ensure_dir", "get_data_path", "normalize_phone_number"]
