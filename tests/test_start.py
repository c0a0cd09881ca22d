"""CLI 入口测试"""

from unittest.mock import patch

import pytest

from plugrun.errors import ModuleResolutionError
from plugrun.process import stop
from plugrun.runtime.asgi import create_runtime
from plugrun.start import start


@pytest.fixture(autouse=True)
def no_dotenv():
    with patch("plugrun.start.load_dotenv"):
        yield


@pytest.fixture
def resolved_runtime():
    with patch("plugrun.start.resolve_runtime_factory", return_value=create_runtime):
        yield


class TestStart:
    def test_missing_target(self, capsys):
        assert start([]) == 1
        err = capsys.readouterr().err
        assert "Missing the required file parameter" in err
        assert "--port" in err

    def test_help(self, capsys):
        assert start(["--help"]) == 0
        assert "--ignore-watch" in capsys.readouterr().out

    def test_unresolvable_runtime(self, router_plugin, capsys):
        error = ModuleResolutionError("fastapi is not installed")
        with patch("plugrun.start.resolve_runtime_factory", side_effect=error):
            with pytest.raises(SystemExit) as exc_info:
                start([str(router_plugin)])
        assert exc_info.value.code == 1
        assert "ModuleResolutionError: fastapi is not installed" in capsys.readouterr().err

    def test_serve(self, router_plugin, resolved_runtime):
        async def fake_serve(launch, factory):
            return 0

        with patch("plugrun.start.serve", side_effect=fake_serve) as serve:
            assert start([str(router_plugin), "-p", "0"]) == 0
        launch, _ = serve.call_args[0]
        assert launch.port == 0

    def test_watch(self, router_plugin, resolved_runtime):
        with patch("plugrun.start.WatchSupervisor") as supervisor_cls:
            async def fake_run():
                return 0

            supervisor_cls.return_value.run.side_effect = fake_run
            assert start([str(router_plugin), "--watch"]) == 0

        argv, ignore_watch = supervisor_cls.call_args[0]
        assert argv == [str(router_plugin), "--watch"]
        assert supervisor_cls.call_args[1]["root"] == router_plugin.parent.resolve()

    def test_watch_child_serves(self, router_plugin, resolved_runtime, monkeypatch):
        """测试 watch 子进程即使带着组合短选项也直接启动服务"""
        monkeypatch.setenv("PLUGRUN_WATCH_CHILD", "1")

        async def fake_serve(launch, factory):
            return 0

        with patch("plugrun.start.WatchSupervisor") as supervisor_cls:
            with patch("plugrun.start.serve", side_effect=fake_serve) as serve:
                assert start([str(router_plugin), "-wP", "-p", "0"]) == 0
        supervisor_cls.assert_not_called()
        launch, _ = serve.call_args[0]
        assert launch.watch is False


class TestStop:
    def test_error(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            stop(ValueError("bad value"))
        assert exc_info.value.code == 1
        assert capsys.readouterr().err.strip() == "ValueError: bad value"

    def test_warning(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            stop("careful")
        assert exc_info.value.code == 1
        assert capsys.readouterr().err.strip() == "Warn: careful"

    def test_clean(self):
        with pytest.raises(SystemExit) as exc_info:
            stop()
        assert exc_info.value.code == 0
