"""运行环境探测"""

import functools
from pathlib import Path

_DOCKERENV = Path("/.dockerenv")
_CGROUP = Path("/proc/self/cgroup")


def _has_docker_cgroup() -> bool:
    try:
        return "docker" in _CGROUP.read_text()
    except OSError:
        return False


@functools.lru_cache(maxsize=None)
def is_docker() -> bool:
    """是否运行在 Docker 容器内

    检查 /.dockerenv 或 /proc/self/cgroup 中的 docker 标记，结果进程内缓存。
    """
    return _DOCKERENV.exists() or _has_docker_cgroup()
