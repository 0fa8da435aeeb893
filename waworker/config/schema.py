"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 waworker 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 或环境变量中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── storage   - 外部持久化配置（Supabase 地址、密钥、表名、凭证缓存开关）
├── bridge    - 协议桥接服务配置（WebSocket 地址、令牌、超时、浏览器标识）
├── session   - 会话生命周期配置（重连延迟、配对码等待时间）
├── ai        - AI 应答策略配置（模型、API Key、历史窗口、默认系统提示词）
├── webhook   - Webhook 应答策略配置（请求超时）
└── gateway   - HTTP 控制面配置（主机和端口）

对于 Java 开发者：
- BaseModel 类似于 Java 的 POJO/Record，但自带字段验证和默认值
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource


class StorageConfig(BaseModel):
    """外部持久化配置。backend=memory 仅用于本地调试，重启后数据丢失。"""
    backend: str = "supabase"  # 存储后端: "supabase" | "memory"
    supabase_url: str = ""  # Supabase 项目地址
    supabase_key: str = ""  # Supabase service role key
    instances_table: str = "instances"  # 实例状态表
    sessions_table: str = "whatsapp_sessions"  # 凭证键值表（复合主键 session_id + key_id）
    messages_table: str = "messages"  # 对话流水表
    cache_credentials: bool = True  # 是否在进程内缓存凭证记录（读穿透，写双写）


class BridgeConfig(BaseModel):
    """
    协议桥接服务配置。

    WhatsApp Web 协议由独立部署的 Node.js 桥接服务（@whiskeysockets/baileys）处理，
    每个实例通过一条独立的 WebSocket 连接驱动桥接服务中的一个 socket。
    """
    url: str = "ws://localhost:3001"  # 桥接服务 WebSocket 地址
    token: str = ""  # 桥接认证令牌（可选但推荐设置）
    connect_timeout_s: float = 60.0  # 建立连接超时（秒）
    request_timeout_s: float = 30.0  # 单次请求（发消息、申请配对码）超时（秒）
    browser: list[str] = Field(default_factory=lambda: ["Ubuntu", "Chrome", "20.0.04"])  # 伪装的浏览器标识
    sync_full_history: bool = False  # 扫码时不同步完整历史，避免压垮服务端
    mark_online_on_connect: bool = False  # 连接后不自动标记在线


class SessionConfig(BaseModel):
    """会话生命周期配置。"""
    reconnect_delay_s: float = 3.0  # 非终止断开后的重连延迟（秒）
    pairing_delay_s: float = 3.0  # 申请配对码前的稳定等待时间（秒）


class AIConfig(BaseModel):
    """
    AI 应答策略配置。

    通过 LiteLLM 统一适配多家模型，model 采用 "provider/model" 格式，
    例如 "openai/gpt-4o-mini"、"anthropic/claude-3-5-haiku-latest"。
    """
    model: str = "openai/gpt-4o-mini"  # 默认模型
    api_key: str = ""  # API 密钥（留空时由 LiteLLM 从标准环境变量读取）
    api_base: str | None = None  # 自定义 API 基础 URL（代理或私有部署）
    max_tokens: int = 1024  # 单次回复的最大输出 token 数
    temperature: float = 0.7  # 生成温度
    timeout_s: float = 30.0  # 单次补全请求超时（秒）
    history_limit: int = 10  # 送入模型的最近对话条数（按实例 + 对端维度）
    default_system_prompt: str = "You are a helpful assistant. Reply concisely."  # 实例未配置提示词时使用


class WebhookConfig(BaseModel):
    """Webhook 应答策略配置。"""
    timeout_s: float = 10.0  # POST 请求超时（秒）


class GatewayConfig(BaseModel):
    """HTTP 控制面配置。"""
    host: str = "0.0.0.0"  # 监听地址
    port: int = 3000  # 监听端口


class Config(BaseSettings):
    """
    waworker 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: WAWORKER_
    - 嵌套分隔符: __ (双下划线)
    - 示例: WAWORKER_STORAGE__SUPABASE_URL=https://xxx.supabase.co
    """
    storage: StorageConfig = Field(default_factory=StorageConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    def missing_storage_settings(self) -> list[str]:
        """返回当前存储后端缺失的必填项名称（为空表示配置完整）。"""
        if self.storage.backend != "supabase":
            return []
        missing = []
        if not self.storage.supabase_url:
            missing.append("storage.supabase_url")
        if not self.storage.supabase_key:
            missing.append("storage.supabase_key")
        return missing

    model_config = ConfigDict(
        env_prefix="WAWORKER_",
        env_nested_delimiter="__"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # 环境变量优先于 config.json（load_config 以构造参数的形式传入文件内容）
        return env_settings, init_settings, dotenv_settings, file_secret_settings
