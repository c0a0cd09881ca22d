"""WatchSupervisor - 文件变化时在新子进程中重启

职责：
- 用 watchdog 递归监听目标模块所在目录
- 忽略匹配 ignore 规则的路径（子串匹配，空格分隔多个规则）
- 防抖后终止当前子进程，再以相同参数（去掉 --watch）启动新子进程

任意时刻最多只有一个子进程存活：重启过程串行执行。
"""

import asyncio
import os
import re
import sys
from collections.abc import Sequence
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from . import config
from .args import split_plugin_args
from .shutdown import ShutdownCoordinator
from .telemetry import get_logger, metrics
from .timer import Timer

logger = get_logger(__name__)

_WATCH_FLAGS = {"--watch", "-w"}
_CHANGE_EVENTS = {"created", "modified", "deleted", "moved"}
_RESTART_TASK = "restart"


def child_argv(argv: Sequence[str]) -> list[str]:
    """去掉 watch 开关后的子进程参数（`--` 之后的插件参数保持不变）"""
    launcher_args, plugin_args = split_plugin_args(argv)
    args = [arg for arg in launcher_args if arg not in _WATCH_FLAGS]
    if plugin_args or "--" in argv:
        args += ["--", *plugin_args]
    return args


def compile_ignore(patterns: str) -> re.Pattern | None:
    """把空格分隔的忽略规则编译为子串匹配的正则"""
    parts = [re.escape(part) for part in patterns.split() if part]
    if not parts:
        return None
    return re.compile("|".join(parts))


class _ChangeHandler(FileSystemEventHandler):
    """把 watchdog 线程里的事件转交给事件循环"""

    def __init__(self, supervisor: "WatchSupervisor", loop: asyncio.AbstractEventLoop):
        self._supervisor = supervisor
        self._loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return
        path = getattr(event, "dest_path", "") or event.src_path
        self._loop.call_soon_threadsafe(self._supervisor.notify_change, os.fsdecode(path))


class WatchSupervisor:
    """监听文件变化并重启子进程

    使用示例:
        supervisor = WatchSupervisor(argv, launch.ignore_watch, root=Path(launch.script).parent)
        exit_code = await supervisor.run()
    """

    def __init__(
        self,
        argv: Sequence[str],
        ignore_watch: str = config.DEFAULT_IGNORE_WATCH,
        root: str | Path | None = None,
        command: Sequence[str] | None = None,
        debounce: float | None = None,
        kill_timeout: float | None = None,
    ):
        """初始化

        Args:
            argv: 原始命令行参数（含 --watch）
            ignore_watch: 忽略规则
            root: 监听的根目录，None 使用工作目录
            command: 子进程命令前缀，None 使用 `python -m plugrun`
            debounce: 防抖时间（秒）
            kill_timeout: SIGTERM 后等待子进程退出的时间（秒）
        """
        self.argv = child_argv(argv)
        self.root = Path(root or Path.cwd()).resolve()
        self._ignored = compile_ignore(ignore_watch)
        self._command = list(command or [sys.executable, "-m", "plugrun"])
        self._debounce = config.WATCH_DEBOUNCE_SECONDS if debounce is None else debounce
        self._kill_timeout = config.WATCH_KILL_TIMEOUT_SECONDS if kill_timeout is None else kill_timeout

        self._timer = Timer()
        self._lock = asyncio.Lock()
        self._child: asyncio.subprocess.Process | None = None
        self._observer: Observer | None = None
        self._stopping = False
        self._monitors: set[asyncio.Task] = set()
        self.restarts = 0

    # === 属性 ===

    @property
    def child(self) -> asyncio.subprocess.Process | None:
        return self._child

    def is_ignored(self, path: str | Path) -> bool:
        """路径（相对 root）是否命中忽略规则"""
        if self._ignored is None:
            return False
        try:
            relative = Path(path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            relative = Path(path).as_posix()
        return self._ignored.search(relative) is not None

    # === 子进程 ===

    def _child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.pop(config.ENV_PREFIX + "WATCH", None)
        env[config.WATCH_CHILD_ENV] = "1"
        return env

    async def _spawn(self) -> None:
        self._child = await asyncio.create_subprocess_exec(
            *self._command, *self.argv, env=self._child_env()
        )
        logger.info(f"[Watch] Started child pid={self._child.pid}")
        task = asyncio.create_task(self._monitor(self._child))
        self._monitors.add(task)
        task.add_done_callback(self._monitors.discard)

    async def _monitor(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if proc is self._child and not self._stopping:
            logger.warning(f"[Watch] Child pid={proc.pid} exited with code {code}, waiting for changes")

    async def _kill_child(self) -> None:
        proc, self._child = self._child, None
        if proc is None or proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Watch] Child pid={proc.pid} ignored SIGTERM, killing")
            proc.kill()
            await proc.wait()

    async def restart(self) -> None:
        """终止当前子进程并启动新子进程"""
        async with self._lock:
            if self._stopping:
                return
            await self._kill_child()
            await self._spawn()
            self.restarts += 1
            if config.METRICS_ENABLED:
                metrics.inc("watch.restarts")

    # === 文件变化 ===

    def notify_change(self, path: str) -> None:
        """文件变化回调（事件循环线程内调用）"""
        if self._stopping or self.is_ignored(path):
            return
        logger.info(f"[Watch] Change detected: {path}")
        # 同名延迟任务覆盖 = 防抖
        self._timer.register_delay(_RESTART_TASK, self._debounce, self.restart)

    def _start_observer(self, loop: asyncio.AbstractEventLoop) -> None:
        self._observer = Observer()
        self._observer.schedule(_ChangeHandler(self, loop), str(self.root), recursive=True)
        self._observer.start()
        logger.info(f"[Watch] Watching {self.root}")

    # === 生命周期 ===

    async def close(self) -> None:
        """停止监听并终止子进程"""
        self._stopping = True
        self._timer.stop()
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join)
            self._observer = None
        async with self._lock:
            await self._kill_child()
        for task in list(self._monitors):
            task.cancel()

    async def run(self) -> int:
        """运行直到收到 SIGINT / SIGTERM

        Returns:
            退出码
        """
        loop = asyncio.get_running_loop()
        coordinator = ShutdownCoordinator(
            lambda trigger: self.close(),
            delay=self._kill_timeout + 1,
        )
        coordinator.install()

        self._start_observer(loop)
        timer_task = asyncio.create_task(self._timer.run())
        async with self._lock:
            await self._spawn()

        try:
            return await coordinator.wait_closed()
        finally:
            timer_task.cancel()
