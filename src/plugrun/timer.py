"""Timer - 延迟任务定时器

同名延迟任务重复注册会覆盖旧任务，天然适合做防抖：
连续的文件变化事件只会在最后一次事件 delay 秒后触发一次回调。

使用示例:
    timer = Timer()

    # 注册延迟任务（0.3 秒后重启）
    timer.register_delay("restart", 0.3, supervisor.restart)

    # 取消延迟任务
    timer.cancel_delay("restart")

    # 启动/停止
    await timer.run()
    timer.stop()
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from .telemetry import get_logger

logger = get_logger(__name__)


@dataclass
class DelayTask:
    """延迟任务"""
    name: str
    delay: float  # 秒
    callback: Callable[[], Any | Coroutine[Any, Any, Any]]
    scheduled_at: float = 0.0  # 调度时间（event loop time）
    trigger_at: float = 0.0  # 触发时间
    cancelled: bool = False


class Timer:
    """延迟任务定时器

    设计原则:
    1. 支持同步/异步回调
    2. 异常隔离：单个回调失败不影响其他任务
    3. 生命周期由调用方管理
    """

    def __init__(self, tick_interval: float | None = None):
        """初始化 Timer

        Args:
            tick_interval: tick 间隔（秒），None 使用配置默认值
        """
        from . import config
        self._tick_interval = tick_interval or config.WATCH_TICK_INTERVAL
        self._delay_tasks: dict[str, DelayTask] = {}
        self._running = False

    def register_delay(
        self,
        name: str,
        delay: float,
        callback: Callable[[], Any | Coroutine[Any, Any, Any]]
    ) -> None:
        """注册延迟任务

        如果已存在同名任务，会被覆盖（取消旧任务）。

        Args:
            name: 任务名（用于日志和取消）
            delay: 延迟时间（秒）
            callback: 回调函数（同步或异步）
        """
        now = asyncio.get_running_loop().time()

        if name in self._delay_tasks:
            logger.debug(f"[Timer] Overwriting delay task: {name}")

        self._delay_tasks[name] = DelayTask(
            name=name,
            delay=delay,
            callback=callback,
            scheduled_at=now,
            trigger_at=now + delay,
        )
        logger.debug(f"[Timer] Registered delay task: {name} ({delay}s)")

    def cancel_delay(self, name: str) -> bool:
        """取消延迟任务

        Returns:
            是否成功取消
        """
        if name in self._delay_tasks:
            task = self._delay_tasks.pop(name)
            task.cancelled = True
            logger.debug(f"[Timer] Cancelled delay task: {name}")
            return True
        return False

    def has_delay(self, name: str) -> bool:
        """检查是否存在延迟任务"""
        return name in self._delay_tasks

    async def run(self) -> None:
        """启动 Timer 主循环

        持续运行直到调用 stop()。
        """
        if self._running:
            logger.warning("[Timer] Already running")
            return

        self._running = True
        logger.debug(f"[Timer] Started (tick={self._tick_interval}s)")

        try:
            while self._running:
                await self._tick()
                await asyncio.sleep(self._tick_interval)
        except asyncio.CancelledError:
            logger.debug("[Timer] Cancelled")
            raise
        finally:
            self._delay_tasks.clear()

    def stop(self) -> None:
        """停止 Timer，取消所有未触发的延迟任务"""
        if not self._running:
            return

        self._running = False
        for name in list(self._delay_tasks.keys()):
            self.cancel_delay(name)
        logger.debug("[Timer] Stopped")

    async def _tick(self) -> None:
        """执行一次 tick，触发到期的延迟任务"""
        now = asyncio.get_running_loop().time()

        for name, task in list(self._delay_tasks.items()):
            if task.cancelled or now < task.trigger_at:
                continue
            # 先移除再执行，回调内重新注册同名任务不会被清掉
            self._delay_tasks.pop(name, None)
            await self._execute_callback(task.name, task.callback)

    async def _execute_callback(
        self,
        name: str,
        callback: Callable[[], Any | Coroutine[Any, Any, Any]]
    ) -> None:
        """执行回调（带异常隔离）"""
        try:
            result = callback()
            if inspect.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"[Timer] Task '{name}' failed: {e}")

    # === 状态查询（用于测试）===

    @property
    def is_running(self) -> bool:
        """是否正在运行"""
        return self._running

    @property
    def delay_task_count(self) -> int:
        """延迟任务数量"""
        return len(self._delay_tasks)
