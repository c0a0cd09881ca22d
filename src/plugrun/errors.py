"""launcher 错误类型

加载/启动阶段的错误都不可恢复，统一交给 process.stop() 处理。
"""


class LauncherError(Exception):
    """所有 launcher 错误的基类"""


class UsageError(LauncherError):
    """命令行参数错误（缺少或多余的目标文件、非法数值）"""


class ModuleResolutionError(LauncherError):
    """找不到兼容的运行时工厂"""


class PluginLoadError(LauncherError):
    """插件模块或 --require 模块加载失败"""


class LoggerLoadError(LauncherError):
    """--logging-module 加载失败"""


class BindError(LauncherError):
    """监听地址绑定失败（端口占用、非法 socket 路径）"""


class RegistrationTimeoutError(LauncherError):
    """插件注册超过 plugin_timeout"""


class StreamFailure(LauncherError):
    """日志输出流写入失败（如 broken pipe），视为致命错误"""


class UnsupportedDebugEnvironment(LauncherError):
    """当前解释器版本不支持调试模式"""
