"""HTTP 控制面模块（FastAPI）。"""

from waworker.api.app import create_app

__all__ = ["create_app"]
