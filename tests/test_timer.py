"""Timer 模块测试"""

import asyncio

import pytest

from plugrun.timer import Timer


@pytest.fixture
def timer():
    """创建测试用 Timer"""
    return Timer(tick_interval=0.05)  # 快速 tick 用于测试


class TestTimerDelay:
    """延迟任务测试"""

    @pytest.mark.asyncio
    async def test_register_delay_triggers(self, timer):
        """测试延迟任务准时触发"""
        triggered = {"value": False}

        def callback():
            triggered["value"] = True

        timer.register_delay("test_delay", 0.2, callback)
        assert timer.delay_task_count == 1

        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.1)
        assert triggered["value"] is False  # 还没到时间

        await asyncio.sleep(0.25)
        assert triggered["value"] is True

        timer.stop()
        await task

        # 触发后任务被清理
        assert timer.delay_task_count == 0

    @pytest.mark.asyncio
    async def test_async_callback(self, timer):
        """测试异步回调"""
        results = []

        async def callback():
            await asyncio.sleep(0.01)
            results.append("done")

        timer.register_delay("async", 0.05, callback)
        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.3)
        timer.stop()
        await task

        assert results == ["done"]

    @pytest.mark.asyncio
    async def test_cancel_delay(self, timer):
        """测试取消延迟任务"""
        triggered = {"value": False}

        def callback():
            triggered["value"] = True

        timer.register_delay("test_cancel", 0.1, callback)
        assert timer.has_delay("test_cancel") is True

        assert timer.cancel_delay("test_cancel") is True
        assert timer.has_delay("test_cancel") is False
        assert timer.cancel_delay("nonexistent") is False

        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.3)
        timer.stop()
        await task

        assert triggered["value"] is False

    @pytest.mark.asyncio
    async def test_delay_overwrite_debounces(self, timer):
        """测试同名任务覆盖：连续注册只触发最后一次"""
        results = []

        task = asyncio.create_task(timer.run())
        for i in range(5):
            timer.register_delay("restart", 0.15, lambda i=i: results.append(i))
            await asyncio.sleep(0.05)

        await asyncio.sleep(0.3)
        timer.stop()
        await task

        assert results == [4]

    @pytest.mark.asyncio
    async def test_reregister_inside_callback(self, timer):
        """测试回调内重新注册同名任务"""
        results = []

        def callback():
            results.append(len(results))
            if len(results) < 2:
                timer.register_delay("again", 0.05, callback)

        timer.register_delay("again", 0.05, callback)
        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.4)
        timer.stop()
        await task

        assert results == [0, 1]

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_delays(self, timer):
        """测试 stop 取消未触发的延迟任务"""
        triggered = {"value": False}

        def callback():
            triggered["value"] = True

        timer.register_delay("pending", 1.0, callback)

        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.1)
        timer.stop()
        await task

        assert triggered["value"] is False
        assert timer.delay_task_count == 0


class TestTimerErrorHandling:
    """异常处理测试"""

    @pytest.mark.asyncio
    async def test_callback_exception_isolated(self, timer):
        """测试回调异常不影响其他任务"""
        results = []

        def bad_callback():
            raise ValueError("Test error")

        timer.register_delay("bad", 0.05, bad_callback)
        timer.register_delay("good", 0.05, lambda: results.append("good"))

        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.3)
        timer.stop()
        await task

        assert results == ["good"]


class TestTimerLifecycle:
    """生命周期测试"""

    @pytest.mark.asyncio
    async def test_run_twice_is_noop(self, timer):
        """测试重复 run 直接返回"""
        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.05)
        assert timer.is_running is True

        await asyncio.wait_for(timer.run(), timeout=1)

        timer.stop()
        await task
        assert timer.is_running is False

    @pytest.mark.asyncio
    async def test_cancel_run(self, timer):
        """测试取消 run 任务"""
        timer.register_delay("pending", 1.0, lambda: None)
        task = asyncio.create_task(timer.run())
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert timer.delay_task_count == 0
