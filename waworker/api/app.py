"""
HTTP 控制面 - 启动/停止实例连接、健康检查。

路由：
- GET  /                      : 运行状态 {status, message, activeSessions}
- GET  /health                : 健康检查 {status: "ok", activeSessions}
- POST /init-session          : {instanceId, phoneNumber?} → 触发 SessionRegistry.start
- POST /disconnect/{id}       : ?reset=true 时同时清空凭证 → SessionRegistry.stop

启动/停止总是立即返回"已受理"，真实结果只能通过实例表的 status 字段观察。

组件在 lifespan 中装配（存储、HTTP 客户端、LLM 提供者、路由器、注册表），
挂在 app.state 上；测试可以通过 create_app() 的参数注入内存存储和假协议连接。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from waworker import __version__
from waworker.config.schema import Config
from waworker.providers.base import LLMProvider
from waworker.providers.litellm_provider import LiteLLMProvider
from waworker.router.router import MessageRouter
from waworker.router.strategies import StrategyResolver
from waworker.session.registry import SessionRegistry
from waworker.storage.base import Store, StoreError
from waworker.storage.memory import MemoryStore
from waworker.transport.base import TransportFactory, TransportOptions
from waworker.transport.bridge import bridge_transport_factory


class InitSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_id: str | None = Field(default=None, alias="instanceId")
    phone_number: str | None = Field(default=None, alias="phoneNumber")


async def open_store(config: Config) -> Store:
    """按配置打开存储后端。supabase 后端连接失败时抛出 StoreError。"""
    if config.storage.backend == "memory":
        logger.warning("Using in-memory store: state is lost on restart")
        return MemoryStore(auto_create=True)

    from waworker.storage.supabase import SupabaseStore
    return await SupabaseStore.connect(config.storage)


def make_provider(config: Config) -> LLMProvider:
    return LiteLLMProvider(
        api_key=config.ai.api_key or None,
        api_base=config.ai.api_base,
        default_model=config.ai.model,
        timeout_s=config.ai.timeout_s,
    )


def transport_options(config: Config) -> TransportOptions:
    return TransportOptions(
        browser=list(config.bridge.browser),
        connect_timeout_s=config.bridge.connect_timeout_s,
        request_timeout_s=config.bridge.request_timeout_s,
        sync_full_history=config.bridge.sync_full_history,
        mark_online_on_connect=config.bridge.mark_online_on_connect,
    )


def create_app(
    config: Config | None = None,
    store: Store | None = None,
    provider: LLMProvider | None = None,
    transport_factory: TransportFactory | None = None,
    resume: bool = False,
) -> FastAPI:
    """
    创建控制面应用。

    参数:
        config: 配置（默认从环境变量和默认值构造）
        store: 预先构造的存储；为 None 时在启动阶段按配置打开
        provider: LLM 提供者；为 None 时使用 LiteLLMProvider
        transport_factory: 协议连接工厂；为 None 时连接配置中的桥接服务
        resume: 启动后恢复上次处于 connected 状态的实例
    """
    config = config or Config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app_store = store or await open_store(config)
        http = httpx.AsyncClient()
        resolver = StrategyResolver(
            provider=provider or make_provider(config),
            store=app_store,
            http=http,
            ai_config=config.ai,
            webhook_timeout_s=config.webhook.timeout_s,
        )
        registry = SessionRegistry(
            store=app_store,
            router=MessageRouter(app_store, resolver),
            transport_factory=transport_factory or bridge_transport_factory(config.bridge.url, config.bridge.token),
            options=transport_options(config),
            config=config.session,
            cache_credentials=config.storage.cache_credentials,
        )
        app.state.store = app_store
        app.state.registry = registry

        if resume:
            await registry.resume()
        logger.info("Control surface ready")

        try:
            yield
        finally:
            await registry.shutdown()
            await http.aclose()
            if store is None:
                await app_store.close()

    app = FastAPI(title="waworker", version=__version__, lifespan=lifespan)

    @app.get("/")
    async def root(request: Request) -> dict[str, Any]:
        return {
            "status": "running",
            "message": "WhatsApp worker is running",
            "activeSessions": request.app.state.registry.active_count,
        }

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        return {"status": "ok", "activeSessions": request.app.state.registry.active_count}

    @app.post("/init-session")
    async def init_session(body: InitSessionRequest, request: Request) -> dict[str, Any]:
        if not body.instance_id:
            raise HTTPException(status_code=400, detail="instanceId is required")

        instance_id = body.instance_id
        logger.info(f"Init requested for {instance_id}")
        try:
            instance = await request.app.state.store.get_instance(instance_id)
        except StoreError as e:
            logger.error(f"Cannot look up instance {instance_id}: {e}")
            raise HTTPException(status_code=503, detail="Instance store unavailable")
        if instance is None:
            raise HTTPException(status_code=404, detail="Instance not found")

        request.app.state.registry.start(instance_id, body.phone_number or None)
        return {
            "status": "initializing",
            "message": "Starting session, pairing code or QR code available soon",
            "instanceId": instance_id,
        }

    @app.post("/disconnect/{instance_id}")
    async def disconnect(instance_id: str, request: Request, reset: bool = False) -> dict[str, Any]:
        await request.app.state.registry.stop(instance_id, reset=reset)
        return {"status": "disconnected", "instanceId": instance_id}

    return app
