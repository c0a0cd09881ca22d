"""ShutdownCoordinator - 信号触发的优雅关闭

状态流转: RUNNING -> SHUTTING_DOWN -> CLOSED

触发源：
- SIGINT / SIGTERM
- 事件循环中未处理的异常（loop exception handler）
- 手动 close()

进入 SHUTTING_DOWN 后，close 回调与宽限计时器竞争：
- close 先完成：取消计时器，exit_code = 0（触发源带错误或 close 抛错时为 1）
- 计时器先到：强制结束，exit_code = 1

SHUTTING_DOWN / CLOSED 状态下的后续触发全部忽略，close 回调只执行一次。
"""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from . import config
from .errors import StreamFailure
from .telemetry import get_logger, metrics

logger = get_logger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownState(Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


@dataclass(frozen=True)
class ShutdownTrigger:
    """触发关闭的原因"""

    signal: str | None = None
    err: BaseException | None = None
    manual: bool = False


CloseRoutine = Callable[[ShutdownTrigger], Awaitable[Any]]


class ShutdownCoordinator:
    """信号订阅 + 关闭状态机

    使用示例:
        coordinator = ShutdownCoordinator(lambda trigger: runtime.close())
        coordinator.install()
        runtime.add_hook("on_close", lambda _: coordinator.uninstall())
        exit_code = await coordinator.wait_closed()
    """

    def __init__(
        self,
        close_routine: CloseRoutine,
        delay: float | None = None,
        log: Any = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        """初始化

        Args:
            close_routine: 关闭回调，接收 ShutdownTrigger
            delay: 宽限时间（秒），None 使用 GRACE_DELAY_SECONDS
            log: 记录触发错误的 logger（通常是运行时的 log）
            loop: 事件循环，None 使用当前运行的循环
        """
        self._close_routine = close_routine
        self._delay = config.GRACE_DELAY_SECONDS if delay is None else delay
        self._log = log or logger
        self._loop = loop or asyncio.get_running_loop()

        self._state = ShutdownState.RUNNING
        self._installed = False
        self._previous_exception_handler = None
        self._grace_timer: asyncio.TimerHandle | None = None
        self._close_task: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self._exit_code: int | None = None
        self.trigger_info: ShutdownTrigger | None = None

    # === 属性 ===

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    # === 订阅 ===

    def install(self) -> None:
        """安装信号处理器和异常处理器"""
        if self._installed:
            return
        for sig in HANDLED_SIGNALS:
            self._loop.add_signal_handler(sig, self._on_signal, sig)
        self._previous_exception_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._on_loop_exception)
        self._installed = True
        logger.debug("[Shutdown] Handlers installed")

    def uninstall(self) -> None:
        """移除处理器，重复调用无效果"""
        if not self._installed:
            return
        for sig in HANDLED_SIGNALS:
            self._loop.remove_signal_handler(sig)
        self._loop.set_exception_handler(self._previous_exception_handler)
        self._previous_exception_handler = None
        self._installed = False
        logger.debug("[Shutdown] Handlers uninstalled")

    def _on_signal(self, sig: signal.Signals) -> None:
        self.trigger(ShutdownTrigger(signal=sig.name))

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        if exc is None:
            loop.default_exception_handler(context)
            return
        self.trigger(ShutdownTrigger(err=exc))

    # === 状态机 ===

    def trigger(self, trigger: ShutdownTrigger) -> bool:
        """进入 SHUTTING_DOWN

        Returns:
            是否真正开始关闭（已在关闭中或已关闭时返回 False）
        """
        if self._state is not ShutdownState.RUNNING:
            logger.debug(f"[Shutdown] Ignored {trigger} in state {self._state.value}")
            return False

        self._state = ShutdownState.SHUTTING_DOWN
        self.trigger_info = trigger
        self._grace_timer = self._loop.call_later(self._delay, self._force_close)
        self._close_task = self._loop.create_task(self._run_close(trigger))

        if trigger.err is not None:
            self._log_error(f"Shutting down after error: {trigger.err!r}", trigger.err)
        elif trigger.signal:
            logger.info(f"[Shutdown] Received {trigger.signal}, closing")
        return True

    def _log_error(self, message: str, exc: BaseException) -> None:
        try:
            # 自定义 logger 只保证有 error(msg)
            if isinstance(self._log, logging.Logger):
                self._log.error(message, exc_info=exc)
            else:
                self._log.error(message)
        except StreamFailure:
            # 应用日志流已断开，改写 launcher 日志
            logger.error(f"[Shutdown] {message}", exc_info=exc)

    def close(self) -> bool:
        """手动触发关闭"""
        return self.trigger(ShutdownTrigger(manual=True))

    async def _run_close(self, trigger: ShutdownTrigger) -> None:
        exit_code = 1 if trigger.err is not None else 0
        try:
            await self._close_routine(trigger)
        except asyncio.CancelledError:
            return
        except Exception as e:
            self._log_error(f"Error while closing: {e!r}", e)
            exit_code = 1
        self._finish(exit_code, forced=False)

    def _force_close(self) -> None:
        if self._state is not ShutdownState.SHUTTING_DOWN:
            return
        logger.warning(f"[Shutdown] Close did not finish within {self._delay}s, forcing exit")
        if self._close_task is not None:
            self._close_task.cancel()
        self._finish(1, forced=True)

    def _finish(self, exit_code: int, forced: bool) -> None:
        if self._state is ShutdownState.CLOSED:
            return
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

        self._state = ShutdownState.CLOSED
        self._exit_code = exit_code
        self.uninstall()
        if config.METRICS_ENABLED:
            metrics.inc("shutdown.forced" if forced else "shutdown.graceful")
        self._closed.set()

    async def wait_closed(self) -> int:
        """等待进入 CLOSED，返回退出码"""
        await self._closed.wait()
        return self._exit_code if self._exit_code is not None else 0
