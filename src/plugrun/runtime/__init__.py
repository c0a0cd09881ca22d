"""Runtime module - 运行时实例与启动流程"""

from .asgi import AsgiRuntime, create_runtime
from .bootstrap import RunningApp, run_app, serve

__all__ = [
    "AsgiRuntime",
    "create_runtime",
    "RunningApp",
    "run_app",
    "serve",
]
