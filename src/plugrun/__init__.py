"""plugrun: 在受管进程生命周期中启动服务插件模块"""

__version__ = "0.1.0"
