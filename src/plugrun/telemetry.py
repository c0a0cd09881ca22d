"""Telemetry - 统一日志和指标入口

提供统一的日志工厂、应用日志格式和指标 facade。

launcher 日志格式: [Component] msg
应用日志格式: 每行一个 JSON 对象 {"time", "level", "name", "msg", "err"?}
指标示例: shutdown.graceful, shutdown.forced, watch.restarts
"""

import asyncio
import json
import logging
import sys
from typing import IO, Any

from .errors import StreamFailure

# 全局日志配置
_LOG_FORMAT = "[%(name)s] %(message)s"

# 应用日志级别名 -> logging 级别
LEVELS: dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


def get_logger(name: str) -> logging.Logger:
    """获取带模块前缀的 logger

    Args:
        name: 模块名（通常使用 __name__）

    Returns:
        配置好的 Logger 实例
    """
    logger = logging.getLogger(name)
    return logger


def configure_logging(level: str) -> None:
    """配置 launcher 自身的根日志（只在 CLI 入口调用一次）"""
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def level_from_name(name: str) -> int:
    """把应用日志级别名转换为 logging 级别

    Raises:
        ValueError: 未知的级别名
    """
    try:
        return LEVELS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown log level: {name}") from None


class JsonFormatter(logging.Formatter):
    """应用日志格式：每条记录一行 JSON"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": int(record.created * 1000),
            "level": record.levelname.lower(),
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["err"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class FatalStreamHandler(logging.StreamHandler):
    """写入失败即抛出 StreamFailure 的 StreamHandler

    logging 默认会吞掉 emit 中的异常，输出流断开后日志会静默丢失。
    绑定事件循环后，失败同时交给该循环的异常处理器（ShutdownCoordinator），
    请求处理中的写入失败同样会结束进程。
    """

    def __init__(self, stream: IO[str] | None = None):
        super().__init__(stream)
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def handleError(self, record: logging.LogRecord) -> None:
        exc = sys.exc_info()[1]
        failure = StreamFailure(f"Log stream write failed: {exc}")
        loop = self._loop
        if loop is not None and not loop.is_closed():
            # emit 可能发生在线程池里
            loop.call_soon_threadsafe(
                loop.call_exception_handler,
                {"message": "Log stream write failed", "exception": failure},
            )
        raise failure from exc


def bind_stream_failures(log: Any, loop: asyncio.AbstractEventLoop) -> None:
    """把 logger 上所有 FatalStreamHandler 绑定到事件循环"""
    for handler in getattr(log, "handlers", []):
        if isinstance(handler, FatalStreamHandler):
            handler.bind_loop(loop)


def build_app_logger(
    name: str,
    level: str,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """根据 {level, stream} 描述创建应用 logger

    重复调用会替换同名 logger 上已有的 handler。

    Args:
        name: logger 名
        level: 级别名（见 LEVELS）
        stream: 输出流，None 使用 stdout

    Returns:
        不向根 logger 传播的 Logger
    """
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = FatalStreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level_from_name(level))
    logger.propagate = False
    return logger


class Metrics:
    """进程内计数器

    只记录生命周期事件：shutdown.graceful / shutdown.forced / watch.restarts。
    """

    def __init__(self):
        self._counters: dict[str, int] = {}

    def inc(self, name: str) -> None:
        self._counters[name] = self._counters.get(name, 0) + 1

    def get_counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def reset(self) -> None:
        """重置所有计数器（用于测试）"""
        self._counters.clear()


# 全局指标实例
metrics = Metrics()
