"""
CLI 命令模块 - waworker 的所有命令行命令定义。

本模块使用 Typer 框架定义 waworker 的 CLI 命令：
- onboard：生成默认配置文件
- serve：启动 HTTP 控制面与会话注册表（工作进程主入口）
- status：查看配置状态
- instances：列出存储中的实例及其状态

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（表格、颜色）
- Uvicorn：运行 FastAPI 控制面
"""

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from waworker import __logo__, __version__

# 创建 Typer 应用实例（CLI 根命令）
app = typer.Typer(
    name="waworker",
    help=f"{__logo__} waworker - Multi-tenant WhatsApp session worker",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    """版本号回调：当用户传入 --version 参数时，打印版本号并退出。"""
    if value:
        console.print(f"{__logo__} waworker v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
):
    """waworker CLI 根命令回调。处理全局选项（如 --version）。"""
    pass


def _mask(secret: str) -> str:
    return f"{secret[:8]}..." if secret else "[dim]not set[/dim]"


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """在 ~/.waworker/ 下生成默认配置文件 config.json，并打印后续操作指引。"""
    from waworker.config.loader import get_config_path, save_config
    from waworker.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} waworker is ready!")
    console.print("\nNext steps:")
    console.print("  1. Set [cyan]storage.supabaseUrl[/cyan] and [cyan]storage.supabaseKey[/cyan]")
    console.print("     (or WAWORKER_STORAGE__SUPABASE_URL / WAWORKER_STORAGE__SUPABASE_KEY)")
    console.print("  2. Start the protocol bridge and point [cyan]bridge.url[/cyan] at it")
    console.print("  3. Run: [cyan]waworker serve[/cyan]")


# ============================================================================
# Serve
# ============================================================================


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: int = typer.Option(None, "--port", "-p", help="Control surface port (default from config)"),
    resume: bool = typer.Option(False, "--resume", help="Reconnect instances that were connected"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动 waworker 工作进程（核心启动命令）。

    1. 加载配置，检查存储必填项（缺失时退出码 1）
    2. 创建 FastAPI 控制面（存储、LLM 提供者、路由器、会话注册表在 lifespan 中装配）
    3. 由 Uvicorn 运行，Ctrl+C 时优雅关闭全部连接（不改写实例状态）
    """
    import uvicorn

    from waworker.api.app import create_app
    from waworker.config.loader import load_config

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")

    config = load_config()
    missing = config.missing_storage_settings()
    if missing:
        console.print(f"[red]Error: missing storage settings: {', '.join(missing)}[/red]")
        console.print("Set them in ~/.waworker/config.json or via WAWORKER_STORAGE__* environment variables")
        raise typer.Exit(1)

    host = host or config.gateway.host
    port = port or config.gateway.port
    console.print(f"{__logo__} Starting waworker on {host}:{port}...")
    console.print(f"[green]✓[/green] Storage: {config.storage.backend}")
    console.print(f"[green]✓[/green] Bridge: {config.bridge.url}")
    console.print(f"[green]✓[/green] Model: {config.ai.model}")
    if resume:
        console.print("[green]✓[/green] Resuming connected instances")

    uvicorn.run(create_app(config, resume=resume), host=host, port=port, log_level="debug" if verbose else "info")


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status():
    """显示配置文件路径、存储与桥接设置、AI 模型等状态信息。"""
    from waworker.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} waworker Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")

    table = Table(title="Settings")
    table.add_column("Section", style="cyan")
    table.add_column("Setting", style="green")
    table.add_column("Value", style="yellow")

    table.add_row("Storage", "backend", config.storage.backend)
    table.add_row("Storage", "supabase_url", config.storage.supabase_url or "[dim]not set[/dim]")
    table.add_row("Storage", "supabase_key", _mask(config.storage.supabase_key))
    table.add_row("Bridge", "url", config.bridge.url)
    table.add_row("Bridge", "token", _mask(config.bridge.token))
    table.add_row("Session", "reconnect_delay_s", str(config.session.reconnect_delay_s))
    table.add_row("AI", "model", config.ai.model)
    table.add_row("AI", "api_key", _mask(config.ai.api_key))
    table.add_row("Gateway", "listen", f"{config.gateway.host}:{config.gateway.port}")
    console.print(table)

    missing = config.missing_storage_settings()
    if missing:
        console.print(f"[yellow]Warning: missing {', '.join(missing)}[/yellow]")


@app.command()
def instances(
    status_filter: str = typer.Option(None, "--status", "-s", help="Only show instances with this status"),
):
    """列出存储中的实例及其持久化状态。"""
    from waworker.api.app import open_store
    from waworker.config.loader import load_config
    from waworker.storage.base import StoreError

    config = load_config()
    missing = config.missing_storage_settings()
    if missing:
        console.print(f"[red]Error: missing storage settings: {', '.join(missing)}[/red]")
        raise typer.Exit(1)

    async def run():
        store = await open_store(config)
        try:
            return await store.list_instances(status=status_filter)
        finally:
            await store.close()

    try:
        rows = asyncio.run(run())
    except StoreError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if not rows:
        console.print("No instances.")
        return

    table = Table(title="Instances")
    table.add_column("ID", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Responder", style="yellow")
    for instance in rows:
        responder = "webhook" if instance.webhook_url else "ai"
        table.add_row(instance.id, instance.status or "", responder)
    console.print(table)


if __name__ == "__main__":
    app()
