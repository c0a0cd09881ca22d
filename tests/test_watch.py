"""WatchSupervisor 测试"""

import asyncio
import os
import signal
import sys

import pytest

from plugrun import config
from plugrun.args import resolve_config
from plugrun.telemetry import metrics
from plugrun.watch import WatchSupervisor, child_argv, compile_ignore

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


@pytest.fixture
def supervisor(tmp_path):
    return WatchSupervisor(
        ["server.py", "--watch"],
        ".git logs __pycache__",
        root=tmp_path,
        command=SLEEPER,
        debounce=0.2,
        kill_timeout=2.0,
    )


class TestChildArgv:
    def test_removes_watch_flags(self):
        assert child_argv(["server.py", "--watch", "-p", "1", "-w"]) == ["server.py", "-p", "1"]

    def test_keeps_plugin_args(self):
        assert child_argv(["server.py", "-w", "--", "--watch", "x"]) == ["server.py", "--", "--watch", "x"]

    def test_keeps_empty_separator(self):
        assert child_argv(["server.py", "--"]) == ["server.py", "--"]


class TestIgnore:
    """忽略规则（子串匹配）"""

    def test_compile_empty(self):
        assert compile_ignore("") is None
        assert compile_ignore("   ") is None

    def test_patterns_are_literal(self):
        pattern = compile_ignore(".swp a+b")
        assert pattern.search("file.swp")
        assert not pattern.search("fileXswp")
        assert pattern.search("a+b.py")

    def test_is_ignored(self, supervisor, tmp_path):
        assert supervisor.is_ignored(tmp_path / ".git" / "HEAD")
        assert supervisor.is_ignored(tmp_path / "logs" / "app.log")
        assert supervisor.is_ignored(tmp_path / "mylogs.txt")
        assert not supervisor.is_ignored(tmp_path / "server.py")

    def test_root_not_matched(self, tmp_path):
        root = tmp_path / "logs_project"
        root.mkdir()
        watcher = WatchSupervisor(["server.py", "-w"], "logs", root=root)
        assert not watcher.is_ignored(root / "server.py")

    def test_no_patterns(self, tmp_path):
        watcher = WatchSupervisor(["server.py", "-w"], "", root=tmp_path)
        assert not watcher.is_ignored(tmp_path / ".git" / "HEAD")

    @pytest.mark.asyncio
    async def test_ignored_change_not_scheduled(self, supervisor, tmp_path):
        supervisor.notify_change(str(tmp_path / "logs" / "app.log"))
        assert not supervisor._timer.has_delay("restart")

        supervisor.notify_change(str(tmp_path / "server.py"))
        assert supervisor._timer.has_delay("restart")


class TestRestart:
    """子进程重启"""

    def test_child_env_drops_watch(self, supervisor, monkeypatch):
        monkeypatch.setenv("PLUGRUN_WATCH", "true")
        monkeypatch.setenv("PLUGRUN_PORT", "4000")
        env = supervisor._child_env()
        assert "PLUGRUN_WATCH" not in env
        assert env["PLUGRUN_PORT"] == "4000"
        assert env[config.WATCH_CHILD_ENV] == "1"

    def test_child_never_watches(self, tmp_path):
        """测试组合短选项启动的子进程不会再次进入 watch 模式"""
        watcher = WatchSupervisor(["-wP", "server.py"], "", root=tmp_path, command=SLEEPER)
        assert watcher.argv == ["-wP", "server.py"]

        launch = resolve_config(watcher.argv, watcher._child_env())
        assert launch.watch is False
        assert launch.pretty_logs is True

    @pytest.mark.asyncio
    async def test_one_child_at_a_time(self, supervisor):
        """测试重启时旧子进程先退出"""
        await supervisor.restart()
        first = supervisor.child
        assert first.returncode is None

        await supervisor.restart()
        second = supervisor.child
        assert first.returncode is not None
        assert second.returncode is None
        assert second.pid != first.pid
        assert supervisor.restarts == 2
        assert metrics.get_counter("watch.restarts") == 2

        await supervisor.close()
        assert second.returncode is not None
        assert supervisor.child is None

    @pytest.mark.asyncio
    async def test_monitor_tasks_tracked(self, supervisor):
        """测试子进程监视任务被持有，关闭后全部结束"""
        await supervisor.restart()
        assert len(supervisor._monitors) == 1
        first = next(iter(supervisor._monitors))

        await supervisor.restart()
        await asyncio.sleep(0.05)
        assert first.done()
        assert first not in supervisor._monitors
        assert len(supervisor._monitors) == 1
        second = next(iter(supervisor._monitors))

        await supervisor.close()
        await asyncio.sleep(0.05)
        assert second.done()
        assert not supervisor._monitors

    @pytest.mark.asyncio
    async def test_kill_after_timeout(self, tmp_path):
        """测试忽略 SIGTERM 的子进程被强制终止"""
        stubborn = [
            sys.executable,
            "-c",
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('ready', flush=True); time.sleep(60)",
        ]
        watcher = WatchSupervisor(["server.py", "-w"], "", root=tmp_path, command=stubborn, kill_timeout=0.3)
        await watcher.restart()
        child = watcher.child
        await asyncio.sleep(0.5)

        await watcher.close()
        assert child.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_restart_after_close_ignored(self, supervisor):
        await supervisor.close()
        await supervisor.restart()
        assert supervisor.child is None
        assert supervisor.restarts == 0


class TestRun:
    """完整 watch 循环"""

    @pytest.mark.asyncio
    async def test_changes_debounced_into_one_restart(self, supervisor, tmp_path):
        task = asyncio.create_task(supervisor.run())
        for _ in range(50):
            if supervisor.child is not None:
                break
            await asyncio.sleep(0.05)
        first = supervisor.child
        assert first is not None

        for i in range(3):
            (tmp_path / f"module_{i}.py").write_text("x = 1\n")
            await asyncio.sleep(0.05)
        (tmp_path / "logs").mkdir()
        (tmp_path / "logs" / "app.log").write_text("ignored\n")

        await asyncio.sleep(1.5)
        assert supervisor.restarts == 1
        assert first.returncode is not None
        assert supervisor.child.returncode is None

        os.kill(os.getpid(), signal.SIGTERM)
        exit_code = await asyncio.wait_for(task, timeout=5)
        assert exit_code == 0
        assert supervisor.child is None
