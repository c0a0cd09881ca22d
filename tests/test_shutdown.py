"""ShutdownCoordinator 状态机测试"""

import asyncio
import os
import signal
from unittest.mock import Mock

import pytest

from plugrun.shutdown import ShutdownCoordinator, ShutdownState, ShutdownTrigger
from plugrun.telemetry import metrics


def _recording_close(calls: list, duration: float = 0.0):
    async def close(trigger):
        calls.append(trigger)
        if duration:
            await asyncio.sleep(duration)

    return close


class TestTriggers:
    """触发源"""

    @pytest.mark.asyncio
    async def test_manual_close(self):
        """测试手动关闭"""
        calls = []
        coordinator = ShutdownCoordinator(_recording_close(calls), delay=1.0)

        assert coordinator.state is ShutdownState.RUNNING
        assert coordinator.close() is True
        assert coordinator.state is ShutdownState.SHUTTING_DOWN

        assert await coordinator.wait_closed() == 0
        assert coordinator.state is ShutdownState.CLOSED
        assert calls == [ShutdownTrigger(manual=True)]
        assert metrics.get_counter("shutdown.graceful") == 1

    @pytest.mark.asyncio
    async def test_signal_closes_once(self):
        """测试两次信号只执行一次关闭"""
        calls = []
        coordinator = ShutdownCoordinator(_recording_close(calls, 0.1), delay=1.0)
        coordinator.install()

        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.sleep(0.02)
        assert coordinator.state is ShutdownState.SHUTTING_DOWN

        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.sleep(0.02)

        assert await coordinator.wait_closed() == 0
        assert len(calls) == 1
        assert calls[0].signal == "SIGTERM"
        assert coordinator.installed is False

    @pytest.mark.asyncio
    async def test_loop_exception_triggers_with_error(self):
        """测试未处理异常触发关闭，退出码为 1"""
        calls = []
        log = Mock()
        coordinator = ShutdownCoordinator(_recording_close(calls), delay=1.0, log=log)
        coordinator.install()

        error = RuntimeError("boom")
        asyncio.get_running_loop().call_exception_handler({"message": "unhandled", "exception": error})

        assert await coordinator.wait_closed() == 1
        assert calls[0].err is error
        log.error.assert_called_once()
        assert "boom" in log.error.call_args[0][0]

    @pytest.mark.asyncio
    async def test_loop_context_without_exception_delegates(self):
        """测试不带异常的 context 交给默认处理器"""
        coordinator = ShutdownCoordinator(_recording_close([]), delay=1.0)
        coordinator.install()
        try:
            asyncio.get_running_loop().call_exception_handler({"message": "just a message"})
            assert coordinator.state is ShutdownState.RUNNING
        finally:
            coordinator.uninstall()

    @pytest.mark.asyncio
    async def test_trigger_after_close_ignored(self):
        """测试 CLOSED 后的触发被忽略"""
        calls = []
        coordinator = ShutdownCoordinator(_recording_close(calls), delay=1.0)
        coordinator.close()
        await coordinator.wait_closed()

        assert coordinator.close() is False
        assert coordinator.trigger(ShutdownTrigger(signal="SIGINT")) is False
        assert len(calls) == 1


class TestGraceTimer:
    """宽限计时器"""

    @pytest.mark.asyncio
    async def test_forced_exit(self):
        """测试 close 超时强制退出"""
        coordinator = ShutdownCoordinator(_recording_close([], duration=5.0), delay=0.1)
        coordinator.close()

        exit_code = await asyncio.wait_for(coordinator.wait_closed(), timeout=2)
        assert exit_code == 1
        assert metrics.get_counter("shutdown.forced") == 1
        assert metrics.get_counter("shutdown.graceful") == 0

    @pytest.mark.asyncio
    async def test_close_error_exit_code(self):
        """测试 close 抛错时退出码为 1"""

        async def failing_close(trigger):
            raise RuntimeError("close failed")

        coordinator = ShutdownCoordinator(failing_close, delay=1.0)
        coordinator.close()
        assert await coordinator.wait_closed() == 1


class TestInstall:
    """处理器安装/移除"""

    @pytest.mark.asyncio
    async def test_uninstall_idempotent(self):
        """测试重复 uninstall 无副作用，并恢复原异常处理器"""
        loop = asyncio.get_running_loop()

        def previous(loop, context):
            pass

        loop.set_exception_handler(previous)
        try:
            coordinator = ShutdownCoordinator(_recording_close([]))
            coordinator.install()
            coordinator.install()
            assert coordinator.installed is True
            assert loop.get_exception_handler() is not previous

            coordinator.uninstall()
            coordinator.uninstall()
            assert coordinator.installed is False
            assert loop.get_exception_handler() is previous
        finally:
            loop.set_exception_handler(None)
