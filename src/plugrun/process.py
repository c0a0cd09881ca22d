"""进程退出 - 所有加载/启动失败的唯一出口"""

import sys
from typing import NoReturn

from .telemetry import get_logger

logger = get_logger(__name__)


def stop(message: BaseException | str | None = None) -> NoReturn:
    """打印错误并退出进程

    异常打印为 `Type: message`，字符串打印为 `Warn: message`，
    两者退出码为 1；无参数时退出码为 0。
    """
    if isinstance(message, BaseException):
        logger.debug("[Process] Stopping after error", exc_info=message)
        print(f"{type(message).__name__}: {message}", file=sys.stderr)
        raise SystemExit(1)
    if message:
        print(f"Warn: {message}", file=sys.stderr)
        raise SystemExit(1)
    raise SystemExit(0)
