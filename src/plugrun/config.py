"""plugrun 配置

配置分为以下几类：
- 监听配置：端口、地址、容器默认地址
- 插件配置：注册超时
- 关闭配置：优雅关闭等待时间
- 调试配置：调试端口、最低 Python 版本
- Watch 配置：忽略规则、防抖、子进程终止超时
"""

import os

# === 环境变量配置 ===
ENV_PREFIX = "PLUGRUN_"  # 各选项对应的环境变量前缀，如 PLUGRUN_LOG_LEVEL
PORT_ENV_VAR = "PORT"  # 通用端口环境变量（优先级低于 PLUGRUN_PORT）

# === 监听配置 ===
DEFAULT_PORT = 3000
MAX_PORT = 65535
DEFAULT_ADDRESS = "127.0.0.1"  # 未指定地址时的监听地址
LISTEN_ADDRESS_DOCKER = "0.0.0.0"  # 容器内默认监听所有网卡

# === 插件配置 ===
DEFAULT_PLUGIN_TIMEOUT_MS = 10_000  # 插件注册超时（毫秒）

# === 日志配置 ===
DEFAULT_LOG_LEVEL = "fatal"  # 应用日志默认级别
LOG_LEVEL = os.environ.get("PLUGRUN_LAUNCHER_LOG_LEVEL", "WARNING")  # launcher 自身日志级别（与应用日志级别分开）

# === 关闭配置 ===
GRACE_DELAY_SECONDS = 0.5  # 收到信号后等待 close 完成的时间，超时强制退出

# === 调试配置 ===
DEFAULT_DEBUG_PORT = 9320
DEBUG_MIN_PYTHON = (3, 8)  # debugpy 支持的最低版本

# === Watch 配置 ===
DEFAULT_IGNORE_WATCH = "__pycache__ .git .venv venv build dist logs .swp .pytest_cache .mypy_cache"
WATCH_DEBOUNCE_SECONDS = 0.3  # 文件变化防抖
WATCH_KILL_TIMEOUT_SECONDS = 5.0  # SIGTERM 后等待子进程退出的时间
WATCH_TICK_INTERVAL = 0.1  # Watch 使用的 Timer tick 间隔
WATCH_CHILD_ENV = "PLUGRUN_WATCH_CHILD"  # 子进程标记：设置后 watch 开关无效

# === 运行时配置 ===
# 声明依赖名 -> 运行时工厂（"module:attr"）
SUPPORTED_RUNTIMES: dict[str, str] = {
    "fastapi": "plugrun.runtime.asgi:create_runtime",
}
DEFAULT_RUNTIME = "fastapi"

# === 指标配置 ===
METRICS_ENABLED = True  # 是否启用指标收集
