"""运行时选项分层

优先级（从低到高）：
1. 基础选项：logger、plugin_timeout、body_limit（来自 LaunchConfig）
2. 插件模块声明的 `options`，仅在 --options 时合并，同名键覆盖基础选项

插件参数独立处理：--prefix 总是覆盖插件参数中的 prefix，与 --options 无关。
"""

from collections.abc import Mapping
from typing import Any, IO

from .models import LaunchConfig
from .telemetry import FatalStreamHandler, JsonFormatter


def build_base_options(launch: LaunchConfig, custom_logger: Any = None) -> dict[str, Any]:
    """构建基础运行时选项

    Args:
        launch: 启动配置
        custom_logger: --logging-module 提供的 logger，None 时使用 {level} 描述
    """
    options: dict[str, Any] = {
        "logger": custom_logger if custom_logger is not None else {"level": launch.log_level},
        "plugin_timeout": launch.plugin_timeout_seconds,
    }
    if launch.body_limit:
        options["body_limit"] = launch.body_limit
    return options


def merge_runtime_options(
    base: Mapping[str, Any],
    declared: Mapping[str, Any] | None,
    use_declared: bool,
) -> dict[str, Any]:
    """合并基础选项和插件声明的选项

    Args:
        base: 基础选项
        declared: 插件模块的 `options`
        use_declared: 是否显式开启了 --options

    Returns:
        新的选项 dict（不修改入参）
    """
    merged = dict(base)
    if use_declared and declared:
        merged.update(declared)
    return merged


def build_plugin_options(launch: LaunchConfig) -> dict[str, Any]:
    """构建传给 register() 的插件参数"""
    plugin_options = dict(launch.plugin_options)
    if launch.prefix:
        plugin_options["prefix"] = launch.prefix
    return plugin_options


def attach_log_stream(logger_option: Any, stream: IO[str]) -> Any:
    """把格式化输出流接到 logger 上

    {level} 描述：返回带 stream 的新描述；
    自定义 logging.Logger：追加一个写入 stream 的 FatalStreamHandler。
    """
    if isinstance(logger_option, Mapping):
        return {**logger_option, "stream": stream}

    if callable(getattr(logger_option, "addHandler", None)):
        handler = FatalStreamHandler(stream)
        handler.setFormatter(JsonFormatter())
        logger_option.addHandler(handler)
    return logger_option
