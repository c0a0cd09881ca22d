"""调试器接入 - debugpy 监听"""

import sys
from collections.abc import Callable

from . import config
from .environment import is_docker
from .errors import UnsupportedDebugEnvironment
from .telemetry import get_logger

logger = get_logger(__name__)


def debug_host_for(requested: str | None) -> str:
    """选择调试监听地址

    显式 --debug-host 优先；容器内默认 0.0.0.0，否则本机回环地址。
    """
    if requested:
        return requested
    if is_docker():
        return config.LISTEN_ADDRESS_DOCKER
    return config.DEFAULT_ADDRESS


def attach_debugger(
    port: int,
    host: str | None = None,
    version_info: tuple[int, ...] | None = None,
    listen: Callable[[tuple[str, int]], object] | None = None,
) -> tuple[str, int]:
    """开启 debugpy 监听

    Args:
        port: 调试端口
        host: 显式调试地址
        version_info: 解释器版本（测试注入），None 使用 sys.version_info
        listen: 监听函数（测试注入），None 使用 debugpy.listen

    Returns:
        实际监听的 (host, port)

    Raises:
        UnsupportedDebugEnvironment: 解释器版本低于 DEBUG_MIN_PYTHON
    """
    version = tuple(version_info if version_info is not None else sys.version_info)[:2]
    if version < config.DEBUG_MIN_PYTHON:
        required = ".".join(str(part) for part in config.DEBUG_MIN_PYTHON)
        current = ".".join(str(part) for part in version)
        raise UnsupportedDebugEnvironment(
            f"Debug mode requires Python >= {required}, running {current}"
        )

    if listen is None:
        import debugpy

        listen = debugpy.listen

    endpoint = (debug_host_for(host), port)
    listen(endpoint)
    logger.info(f"[Debug] debugpy listening on {endpoint[0]}:{endpoint[1]}")
    return endpoint
