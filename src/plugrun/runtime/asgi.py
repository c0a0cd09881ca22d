"""AsgiRuntime - FastAPI + uvicorn 运行时实例

对外契约：
- register(plugin, plugin_options): 注册插件（带 plugin_timeout）
- listen(port | socket_path, address=None): 绑定并开始监听，就绪后返回
- close(): 停止监听并触发 on_close hook（幂等）
- add_hook(name, handler): on_ready / on_close
- log: 应用 logger（同时挂在 app.state.log 上，插件在请求中使用）

信号处理不在这里：uvicorn 自带的信号捕获被关闭，由 ShutdownCoordinator 负责。
"""

import asyncio
import contextlib
import inspect
import os
import socket
from collections.abc import Callable, Mapping
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI

from .. import config
from ..errors import BindError, RegistrationTimeoutError
from ..telemetry import bind_stream_failures, build_app_logger, get_logger
from .middleware import BodyLimitMiddleware

logger = get_logger(__name__)

APP_LOGGER_NAME = "plugrun.app"
HOOK_NAMES = ("on_ready", "on_close")

Hook = Callable[["AsgiRuntime"], Any]


class _ManagedServer(uvicorn.Server):
    """不安装信号处理器的 uvicorn Server"""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def normalize_prefix(prefix: str | None) -> str:
    """路由前缀规范化：以 / 开头，不以 / 结尾，根路径为空串"""
    if not prefix:
        return ""
    prefix = "/" + prefix.strip("/")
    return "" if prefix == "/" else prefix


class AsgiRuntime:
    """运行时实例

    每次启动只有一个实例；一个实例只能 listen 一次。

    Attributes:
        app: FastAPI 应用
        log: 应用 logger
        plugin_timeout: 插件注册超时（秒）
        body_limit: 请求体大小上限（字节），None 表示不限制
        address: 监听地址（listen 之后可用）
    """

    def __init__(self, options: Mapping[str, Any] | None = None):
        options = dict(options or {})
        logger_option = options.pop("logger", None)
        self.plugin_timeout: float = options.pop(
            "plugin_timeout", config.DEFAULT_PLUGIN_TIMEOUT_MS / 1000
        )
        self.body_limit: int | None = options.pop("body_limit", None)
        self.log = self._build_log(logger_option)

        # 其余选项交给 FastAPI（未知键保存在 app.extra）
        self.app = FastAPI(**options)
        # 插件通过 request.app.state.log 使用应用 logger
        self.app.state.log = self.log
        if self.body_limit:
            self.app.add_middleware(BodyLimitMiddleware, limit=self.body_limit)

        self.address: str | None = None
        self.port: int | None = None
        self._hooks: dict[str, list[Hook]] = {name: [] for name in HOOK_NAMES}
        self._server: _ManagedServer | None = None
        self._serve_task: asyncio.Task | None = None
        self._socket: socket.socket | None = None
        self._socket_path: str | None = None
        self._closed = False

    @staticmethod
    def _build_log(logger_option: Any):
        if logger_option is None:
            logger_option = {"level": config.DEFAULT_LOG_LEVEL}
        if isinstance(logger_option, Mapping):
            return build_app_logger(
                APP_LOGGER_NAME,
                logger_option.get("level", config.DEFAULT_LOG_LEVEL),
                logger_option.get("stream"),
            )
        return logger_option

    # === Hook ===

    def add_hook(self, name: str, handler: Hook) -> None:
        """注册生命周期 hook

        Raises:
            ValueError: 未知的 hook 名
        """
        if name not in self._hooks:
            raise ValueError(f"Unknown hook: {name} (expected one of {', '.join(HOOK_NAMES)})")
        self._hooks[name].append(handler)

    async def _fire(self, name: str) -> None:
        for handler in list(self._hooks[name]):
            result = handler(self)
            if inspect.isawaitable(result):
                await result

    # === 插件注册 ===

    async def register(self, plugin: Any, plugin_options: Mapping[str, Any] | None = None) -> None:
        """注册插件

        Raises:
            RegistrationTimeoutError: 注册超过 plugin_timeout
        """
        plugin_options = dict(plugin_options or {})
        try:
            await asyncio.wait_for(self._register(plugin, plugin_options), timeout=self.plugin_timeout)
        except asyncio.TimeoutError:
            raise RegistrationTimeoutError(
                f"Plugin did not finish registering within {self.plugin_timeout * 1000:.0f} ms"
            ) from None

    async def _register(self, plugin: Any, plugin_options: dict[str, Any]) -> None:
        if inspect.ismodule(plugin) and not callable(getattr(plugin, "register", None)):
            plugin = plugin.router

        if isinstance(plugin, APIRouter):
            self.app.include_router(plugin, prefix=normalize_prefix(plugin_options.get("prefix")))
            return

        register = plugin if callable(plugin) else plugin.register
        result = register(self.app, plugin_options)
        if inspect.isawaitable(result):
            await result

    # === 监听 ===

    def _bind(self, port_or_path: int | str, address: str | None) -> socket.socket:
        """先绑定 socket，失败时不会留下任何监听"""
        try:
            if isinstance(port_or_path, str):
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                try:
                    sock.bind(port_or_path)
                except OSError:
                    sock.close()
                    raise
                self._socket_path = port_or_path
                self.address = f"unix:{port_or_path}"
            else:
                host = address or config.DEFAULT_ADDRESS
                family = socket.AF_INET6 if ":" in host else socket.AF_INET
                sock = socket.create_server((host, port_or_path), family=family)
                self.port = sock.getsockname()[1]
                shown = f"[{host}]" if family == socket.AF_INET6 else host
                self.address = f"http://{shown}:{self.port}"
        except (OSError, OverflowError) as e:
            target = port_or_path if isinstance(port_or_path, str) else f"{address or config.DEFAULT_ADDRESS}:{port_or_path}"
            raise BindError(f"Cannot listen on {target}: {e}") from e
        return sock

    async def listen(self, port_or_path: int | str, address: str | None = None) -> str:
        """绑定并启动 uvicorn，直到就绪才返回

        Args:
            port_or_path: int 为 TCP 端口，str 为 Unix socket 路径
            address: TCP 监听地址，None 使用 DEFAULT_ADDRESS

        Returns:
            监听地址

        Raises:
            BindError: 绑定失败或服务在就绪前退出
        """
        if self._server is not None:
            raise BindError(f"Already listening at {self.address}")

        self._socket = self._bind(port_or_path, address)
        bind_stream_failures(self.log, asyncio.get_running_loop())
        server = _ManagedServer(uvicorn.Config(self.app, log_config=None, access_log=False))
        self._server = server
        self._serve_task = asyncio.create_task(server.serve(sockets=[self._socket]))

        while not server.started:
            if self._serve_task.done():
                self._release()
                error = None if self._serve_task.cancelled() else self._serve_task.exception()
                raise BindError(f"Server failed to start at {self.address}") from error
            await asyncio.sleep(0.01)

        self.log.info(f"Server listening at {self.address}")
        await self._fire("on_ready")
        return self.address

    # === 关闭 ===

    async def close(self) -> None:
        """停止监听并触发 on_close hook，重复调用无效果"""
        if self._closed:
            return
        self._closed = True

        if self._server is not None and self._serve_task is not None:
            self._server.should_exit = True
            try:
                await self._serve_task
            finally:
                self._release()
            logger.debug(f"[Runtime] Stopped listening at {self.address}")

        await self._fire("on_close")

    def _release(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self._socket_path is not None:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self._socket_path)
            self._socket_path = None

    @property
    def closed(self) -> bool:
        return self._closed


def create_runtime(options: Mapping[str, Any] | None = None) -> AsgiRuntime:
    """运行时工厂"""
    return AsgiRuntime(options)
