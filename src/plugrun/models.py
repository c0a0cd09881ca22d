"""数据模型"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable

from . import config


@dataclass(frozen=True)
class LaunchConfig:
    """一次启动的完整配置

    由 args.resolve_config() 构造，之后不再修改。

    Attributes:
        script: 目标插件模块路径
        port: 监听端口（CLI > PLUGRUN_PORT > PORT > 默认值）
        address: 监听地址，优先于 socket
        socket: Unix socket 路径
        require: 启动前加载的额外模块
        logging_module: 自定义 logger 模块
        log_level: 应用日志级别
        pretty_logs: 是否美化日志输出
        debug: 是否开启调试器
        debug_port: 调试端口
        debug_host: 调试监听地址
        watch: 是否开启 watch 模式
        ignore_watch: watch 忽略规则（空格分隔）
        options: 是否采用插件声明的 options
        prefix: 插件路由前缀
        plugin_timeout: 插件注册超时（毫秒）
        body_limit: 请求体大小上限（字节）
        plugin_options: `--` 之后的插件参数
        help: 是否只显示帮助
    """

    script: str
    port: int = config.DEFAULT_PORT
    address: str | None = None
    socket: str | None = None
    require: tuple[str, ...] = ()
    logging_module: str | None = None
    log_level: str = config.DEFAULT_LOG_LEVEL
    pretty_logs: bool = False
    debug: bool = False
    debug_port: int = config.DEFAULT_DEBUG_PORT
    debug_host: str | None = None
    watch: bool = False
    ignore_watch: str = config.DEFAULT_IGNORE_WATCH
    options: bool = False
    prefix: str | None = None
    plugin_timeout: int = config.DEFAULT_PLUGIN_TIMEOUT_MS
    body_limit: int | None = None
    plugin_options: Mapping[str, Any] = field(default_factory=dict)
    help: bool = False

    def __post_init__(self):
        # 冻结插件参数，防止下游原地修改
        object.__setattr__(self, "plugin_options", MappingProxyType(dict(self.plugin_options)))

    @property
    def plugin_timeout_seconds(self) -> float:
        return self.plugin_timeout / 1000


@dataclass
class LoadedModules:
    """Module Loader 的结果，只属于一次 bootstrap"""

    runtime_factory: Callable[[dict], Any]
    plugin: Any
    plugin_declared_options: Mapping[str, Any] | None = None
    logger: Any = None
