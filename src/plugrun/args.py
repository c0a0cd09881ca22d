"""Config Resolver - 命令行参数 + 环境变量 + 默认值 -> LaunchConfig

优先级：
1. 显式命令行参数
2. PLUGRUN_<OPTION> 环境变量（如 PLUGRUN_LOG_LEVEL）
3. 仅 port：通用 PORT 环境变量
4. 内置默认值

`--` 之后的参数作为插件参数（plugin_options）。
"""

import argparse
from collections.abc import Mapping, Sequence
from typing import Any

from . import config
from .errors import UsageError
from .models import LaunchConfig
from .telemetry import LEVELS

_TRUE_VALUES = {"1", "true", "yes", "on"}


class _ArgumentParser(argparse.ArgumentParser):
    """出错时抛出 UsageError，而不是直接退出进程"""

    def error(self, message: str):
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    """构建 CLI 解析器

    除 help 外所有选项默认值为 None，用于区分"未显式给出"。
    """
    parser = _ArgumentParser(
        prog="plugrun",
        description="Start a server plugin module inside a managed process lifecycle.",
        epilog="Arguments after `--` are passed to the plugin as plugin options.",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("script", nargs="*", help="Path to the plugin module")
    parser.add_argument("-p", "--port", type=int, help=f"Port to listen on (default {config.DEFAULT_PORT}, or $PORT)")
    parser.add_argument("-a", "--address", help="Address to listen on")
    parser.add_argument("-s", "--socket", help="Unix socket path to listen on")
    parser.add_argument(
        "-r", "--require", action="append", metavar="MOD",
        help="Module to load before the plugin (repeatable)",
    )
    parser.add_argument("--logging-module", metavar="MOD", help="Module exporting a custom `logger`")
    parser.add_argument(
        "-l", "--log-level",
        help=f"Application log level: {', '.join(LEVELS)} (default {config.DEFAULT_LOG_LEVEL})",
    )
    parser.add_argument("-P", "--pretty-logs", action="store_true", default=None, help="Pretty print the logs")
    parser.add_argument("-d", "--debug", action="store_true", default=None, help="Start a debugpy listener")
    parser.add_argument(
        "-I", "--debug-port", type=int,
        help=f"Debugger port (default {config.DEFAULT_DEBUG_PORT})",
    )
    parser.add_argument("--debug-host", help="Debugger host")
    parser.add_argument("-w", "--watch", action="store_true", default=None, help="Restart on file changes")
    parser.add_argument(
        "--ignore-watch", metavar="PATTERNS",
        help=f"Space separated patterns ignored by --watch (default \"{config.DEFAULT_IGNORE_WATCH}\")",
    )
    parser.add_argument(
        "-o", "--options", action="store_true", default=None,
        help="Use the `options` declared by the plugin module",
    )
    parser.add_argument("-x", "--prefix", help="Route prefix for the plugin")
    parser.add_argument(
        "-T", "--plugin-timeout", type=int, metavar="MS",
        help=f"Plugin registration timeout in ms (default {config.DEFAULT_PLUGIN_TIMEOUT_MS})",
    )
    parser.add_argument("--body-limit", type=int, metavar="BYTES", help="Maximum request body size")
    parser.add_argument("-h", "--help", action="store_true", default=False, help="Show this help")
    return parser


def render_help() -> str:
    """返回帮助文本"""
    return build_parser().format_help()


def split_plugin_args(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """按第一个 `--` 切分 launcher 参数和插件参数"""
    argv = list(argv)
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1:]
    return argv, []


def parse_plugin_options(tokens: Sequence[str]) -> dict[str, Any]:
    """解析插件参数

    `--key value` -> {"key": value}，`--flag` -> {"flag": True}，
    key 中的 `-` 转为 `_`，整数值转为 int。

    Raises:
        UsageError: 出现不以 `--` 开头的孤立值
    """
    options: dict[str, Any] = {}
    tokens = list(tokens)
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if not token.startswith("--") or token == "--":
            raise UsageError(f"Unexpected plugin argument: {token}")

        key, sep, inline_value = token[2:].partition("=")
        key = key.replace("-", "_")
        if sep:
            options[key] = _coerce(inline_value)
        elif i + 1 < len(tokens) and not tokens[i + 1].startswith("--"):
            options[key] = _coerce(tokens[i + 1])
            i += 1
        else:
            options[key] = True
        i += 1
    return options


def _coerce(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        return value


def _env_value(environ: Mapping[str, str], name: str, kind: type = str) -> Any:
    """读取 PLUGRUN_<NAME> 环境变量，未设置返回 None"""
    key = config.ENV_PREFIX + name.upper()
    raw = environ.get(key)
    if raw is None or raw == "":
        return None
    if kind is bool:
        return raw.lower() in _TRUE_VALUES
    if kind is int:
        try:
            return int(raw)
        except ValueError:
            raise UsageError(f"{key} must be an integer, got {raw!r}") from None
    return raw


def _pick(cli_value: Any, environ: Mapping[str, str], name: str, default: Any, kind: type = str) -> Any:
    if cli_value is not None:
        return cli_value
    env_value = _env_value(environ, name, kind)
    if env_value is not None:
        return env_value
    return default


def _check_port(port: int, source: str) -> int:
    if not 0 <= port <= config.MAX_PORT:
        raise UsageError(f"{source} must be between 0 and {config.MAX_PORT}, got {port}")
    return port


def _resolve_port(cli_port: int | None, environ: Mapping[str, str]) -> int:
    """端口：--port > PLUGRUN_PORT > PORT > 默认值

    Raises:
        UsageError: 端口不是整数或超出 0-65535
    """
    if cli_port is not None:
        return _check_port(cli_port, "--port")
    port = _env_value(environ, "port", int)
    if port is not None:
        return _check_port(port, config.ENV_PREFIX + "PORT")

    raw = environ.get(config.PORT_ENV_VAR)
    if raw:
        try:
            port = int(raw)
        except ValueError:
            raise UsageError(f"{config.PORT_ENV_VAR} must be an integer, got {raw!r}") from None
        return _check_port(port, config.PORT_ENV_VAR)
    return config.DEFAULT_PORT


def resolve_config(argv: Sequence[str], environ: Mapping[str, str]) -> LaunchConfig:
    """解析启动配置

    Args:
        argv: 命令行参数（不含程序名）
        environ: 环境变量

    Returns:
        LaunchConfig

    Raises:
        UsageError: 目标文件缺失或多于一个、参数非法
    """
    launcher_args, plugin_args = split_plugin_args(argv)
    ns = build_parser().parse_intermixed_args(launcher_args)

    if ns.help:
        return LaunchConfig(script=ns.script[0] if len(ns.script) == 1 else "", help=True)

    if len(ns.script) != 1:
        if not ns.script:
            raise UsageError("Missing the required file parameter")
        raise UsageError(f"Expected exactly one file parameter, got {len(ns.script)}: {' '.join(ns.script)}")

    log_level = _pick(ns.log_level, environ, "log_level", config.DEFAULT_LOG_LEVEL)
    if log_level.lower() not in LEVELS:
        raise UsageError(f"Unknown log level: {log_level}")

    # watch 子进程里 watch 开关总是关闭
    watch = _pick(ns.watch, environ, "watch", False, bool) and not environ.get(config.WATCH_CHILD_ENV)

    require = ns.require
    if require is None:
        env_require = _env_value(environ, "require")
        require = env_require.split(",") if env_require else []

    return LaunchConfig(
        script=ns.script[0],
        port=_resolve_port(ns.port, environ),
        address=_pick(ns.address, environ, "address", None),
        socket=_pick(ns.socket, environ, "socket", None),
        require=tuple(require),
        logging_module=_pick(ns.logging_module, environ, "logging_module", None),
        log_level=log_level.lower(),
        pretty_logs=_pick(ns.pretty_logs, environ, "pretty_logs", False, bool),
        debug=_pick(ns.debug, environ, "debug", False, bool),
        debug_port=_check_port(
            _pick(ns.debug_port, environ, "debug_port", config.DEFAULT_DEBUG_PORT, int), "--debug-port"
        ),
        debug_host=_pick(ns.debug_host, environ, "debug_host", None),
        watch=watch,
        ignore_watch=_pick(ns.ignore_watch, environ, "ignore_watch", config.DEFAULT_IGNORE_WATCH),
        options=_pick(ns.options, environ, "options", False, bool),
        prefix=_pick(ns.prefix, environ, "prefix", None),
        plugin_timeout=_pick(ns.plugin_timeout, environ, "plugin_timeout", config.DEFAULT_PLUGIN_TIMEOUT_MS, int),
        body_limit=_pick(ns.body_limit, environ, "body_limit", None, int),
        plugin_options=parse_plugin_options(plugin_args),
    )
