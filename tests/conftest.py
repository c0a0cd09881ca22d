"""Pytest 配置"""

import textwrap

import pytest

from plugrun.telemetry import metrics


@pytest.fixture(autouse=True)
def reset_metrics():
    """每次测试前重置指标"""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def write_module(tmp_path):
    """在临时目录写入 Python 模块，返回路径"""

    def _write(name: str, source: str):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source))
        return path

    return _write


@pytest.fixture
def router_plugin(write_module):
    """导出 APIRouter 的插件"""
    return write_module(
        "server.py",
        """
        from fastapi import APIRouter

        router = APIRouter()


        @router.get("/hello")
        async def hello():
            return {"hello": "world"}
        """,
    )
