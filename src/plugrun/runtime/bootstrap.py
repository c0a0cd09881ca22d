"""Bootstrap - 构造、注册、监听一个运行时实例

职责：
- 加载 --require 模块、插件、自定义 logger
- 分层构建运行时选项（基础选项 / 插件声明的 options）
- 美化日志、调试器接入
- 注册插件、安装 ShutdownCoordinator、绑定监听地址

不负责：
- 参数解析（args）
- watch 模式（watch.WatchSupervisor 以子进程方式重复调用本流程）

任何失败都走 stop()，不重试。
"""

import sys
from dataclasses import dataclass
from typing import Any

from .. import config
from ..debug import attach_debugger
from ..environment import is_docker
from ..errors import LauncherError
from ..loader import (
    RuntimeFactory,
    resolve_extra_modules,
    resolve_logger,
    resolve_plugin,
    resolve_runtime_factory,
)
from ..models import LaunchConfig, LoadedModules
from ..options import (
    attach_log_stream,
    build_base_options,
    build_plugin_options,
    merge_runtime_options,
)
from ..pretty import PrettyStream
from ..process import stop
from ..shutdown import ShutdownCoordinator
from ..telemetry import get_logger

logger = get_logger(__name__)


@dataclass
class RunningApp:
    """一次成功启动的结果"""

    runtime: Any
    coordinator: ShutdownCoordinator

    @property
    def address(self) -> str | None:
        return self.runtime.address


def load_modules(launch: LaunchConfig, runtime_factory: RuntimeFactory | None = None) -> LoadedModules:
    """按顺序加载：--require 模块 -> 运行时工厂 -> 插件 -> logger

    Raises:
        LauncherError: 任一加载失败
    """
    resolve_extra_modules(launch.require)
    if runtime_factory is None:
        runtime_factory = resolve_runtime_factory(launch.script)
    plugin, declared = resolve_plugin(launch.script)
    custom_logger = resolve_logger(launch.logging_module) if launch.logging_module else None
    return LoadedModules(
        runtime_factory=runtime_factory,
        plugin=plugin,
        plugin_declared_options=declared,
        logger=custom_logger,
    )


def build_runtime_options(launch: LaunchConfig, modules: LoadedModules) -> dict[str, Any]:
    """基础选项 + 插件声明的 options + 美化日志"""
    options = merge_runtime_options(
        build_base_options(launch, modules.logger),
        modules.plugin_declared_options,
        launch.options,
    )
    if launch.pretty_logs:
        options["logger"] = attach_log_stream(options["logger"], PrettyStream(sys.stdout))
    return options


async def listen(runtime: Any, launch: LaunchConfig) -> str:
    """按优先级绑定：address > socket > 容器内 0.0.0.0 > 默认地址"""
    if launch.address:
        return await runtime.listen(launch.port, launch.address)
    if launch.socket:
        return await runtime.listen(launch.socket)
    if is_docker():
        return await runtime.listen(launch.port, config.LISTEN_ADDRESS_DOCKER)
    return await runtime.listen(launch.port)


async def run_app(
    launch: LaunchConfig,
    runtime_factory: RuntimeFactory | None = None,
) -> RunningApp | None:
    """启动一个运行时实例

    Args:
        launch: 启动配置
        runtime_factory: 已解析的运行时工厂，None 时按目标模块解析

    Returns:
        RunningApp；走 stop() 分支时返回 None
    """
    try:
        modules = load_modules(launch, runtime_factory)
    except LauncherError as e:
        return stop(e)

    options = build_runtime_options(launch, modules)

    if launch.debug:
        try:
            attach_debugger(launch.debug_port, launch.debug_host)
        except LauncherError as e:
            return stop(e)

    runtime = modules.runtime_factory(options)

    try:
        await runtime.register(modules.plugin, build_plugin_options(launch))
    except Exception as e:
        return stop(e)

    coordinator = ShutdownCoordinator(lambda trigger: runtime.close(), log=runtime.log)
    coordinator.install()
    runtime.add_hook("on_close", lambda instance: coordinator.uninstall())

    try:
        address = await listen(runtime, launch)
    except LauncherError as e:
        coordinator.uninstall()
        return stop(e)

    logger.info(f"[Bootstrap] {launch.script} listening at {address}")
    return RunningApp(runtime=runtime, coordinator=coordinator)


async def serve(launch: LaunchConfig, runtime_factory: RuntimeFactory | None = None) -> int:
    """启动并等待关闭完成

    Returns:
        退出码
    """
    running = await run_app(launch, runtime_factory)
    if running is None:
        return 1
    return await running.coordinator.wait_closed()
