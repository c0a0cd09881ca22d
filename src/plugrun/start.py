"""plugrun 入口

流程：加载 .env -> 解析配置 -> 解析运行时工厂 -> watch 模式或直接启动
"""

import asyncio
import os
import sys
from collections.abc import Sequence
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from . import config
from .args import render_help, resolve_config
from .errors import LauncherError, UsageError
from .loader import resolve_runtime_factory
from .process import stop
from .runtime.bootstrap import serve
from .telemetry import configure_logging
from .watch import WatchSupervisor

__all__ = ["main", "start", "stop"]


def start(argv: Sequence[str]) -> int:
    """启动 launcher

    Args:
        argv: 命令行参数（不含程序名）

    Returns:
        退出码
    """
    load_dotenv(find_dotenv(usecwd=True))

    try:
        launch = resolve_config(argv, os.environ)
    except UsageError as e:
        print(f"{e}\n", file=sys.stderr)
        print(render_help(), file=sys.stderr)
        return 1

    if launch.help:
        print(render_help())
        return 0

    try:
        runtime_factory = resolve_runtime_factory(launch.script)
    except LauncherError as e:
        stop(e)

    if launch.watch:
        supervisor = WatchSupervisor(
            argv,
            launch.ignore_watch,
            root=Path(launch.script).resolve().parent,
        )
        return asyncio.run(supervisor.run())

    return asyncio.run(serve(launch, runtime_factory))


def main() -> int:
    """console script 入口"""
    configure_logging(config.LOG_LEVEL)
    return start(sys.argv[1:])
