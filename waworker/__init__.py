"""
waworker - 多租户 WhatsApp 会话工作进程

模块概述：
    本文件是 waworker 包的入口文件（__init__.py），定义了包的元信息。
    waworker 在单个进程中托管多个租户的长连接 WhatsApp 实例（instance），
    每个实例只需扫码（或配对码）登录一次，凭证持久化到外部存储，
    进程重启后无需重新扫码即可恢复。

    整个框架的核心功能包括：
    - 会话注册表：保证每个实例同一时刻最多一个活跃连接
    - 凭证存储适配器：把协议层的键值凭证读写映射到 Supabase
    - 连接状态机：二维码/配对码下发、断线重连与终止判定
    - 消息路由：把入站消息交给 Webhook 或 AI 应答策略，并记录对话流水
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "📡"
