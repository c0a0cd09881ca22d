"""Module Loader - 运行时工厂、插件、logger、额外模块的加载

职责：
- 根据目标模块所在项目声明的依赖选择兼容的运行时工厂
- 加载插件模块并找到可注册单元
- 加载自定义 logger 和 --require 模块

加载是同步且有序的：运行时工厂 -> 插件 -> logger。
所有失败都抛出 errors 中对应的异常，由调用方交给 stop()。
"""

import hashlib
import importlib
import importlib.metadata
import importlib.util
import inspect
import sys
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Callable

from fastapi import APIRouter
from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from . import config
from .errors import LoggerLoadError, ModuleResolutionError, PluginLoadError
from .telemetry import get_logger

logger = get_logger(__name__)

RuntimeFactory = Callable[[dict], Any]

# 动态加载的模块名前缀
_NAMESPACE = "plugrun.loaded"


def _module_name_for(path: Path) -> str:
    stem = "".join(ch if ch.isalnum() else "_" for ch in path.stem)
    digest = hashlib.md5(str(path).encode()).hexdigest()[:8]
    return f"{_NAMESPACE}.{stem}_{digest}"


def load_module_from_path(path: Path) -> ModuleType:
    """从文件加载模块并注册到 sys.modules

    文件所在目录会加入 sys.path，便于插件导入同目录模块。

    Raises:
        FileNotFoundError: 文件不存在
        ImportError: 无法为该文件创建 loader
        Exception: 模块顶层代码抛出的任何异常
    """
    path = path.resolve()
    if not path.is_file():
        raise FileNotFoundError(f"No such file: {path}")

    parent = str(path.parent)
    if parent not in sys.path:
        sys.path.insert(0, parent)

    module_name = _module_name_for(path)
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {path}: not a Python module")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def require_path(name: str, cwd: Path | None = None) -> ModuleType:
    """按路径（相对工作目录）或模块名加载模块

    路径存在时按文件加载，否则按点分模块名 import。
    """
    candidate = (cwd or Path.cwd()) / name
    if candidate.is_file():
        return load_module_from_path(candidate)
    if name.endswith(".py"):
        raise FileNotFoundError(f"No such file: {candidate}")
    return importlib.import_module(name)


# === 运行时工厂解析 ===


@dataclass(frozen=True)
class RuntimeResolution:
    """运行时工厂解析结果

    成功时 factory 非空；失败时 error 说明原因。
    """

    factory: RuntimeFactory | None = None
    source: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.factory is not None

    def unwrap(self) -> RuntimeFactory:
        """返回工厂，失败时抛出 ModuleResolutionError"""
        if self.factory is None:
            raise ModuleResolutionError(self.error or "No runtime factory resolved")
        return self.factory


def find_dependency_declaration(start: Path) -> Path | None:
    """从 start 目录向上查找 pyproject.toml 或 requirements.txt"""
    for directory in [start, *start.parents]:
        for name in ("pyproject.toml", "requirements.txt"):
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def read_declared_requirements(declaration: Path) -> list[Requirement]:
    """读取依赖声明文件中的依赖

    Raises:
        ModuleResolutionError: 文件无法解析
    """
    try:
        if declaration.name == "pyproject.toml":
            with open(declaration, "rb") as fh:
                data = tomllib.load(fh)
            lines = data.get("project", {}).get("dependencies", [])
        else:
            lines = [
                line.split("#", 1)[0].strip()
                for line in declaration.read_text().splitlines()
            ]
            lines = [line for line in lines if line and not line.startswith("-")]
        return [Requirement(line) for line in lines]
    except (OSError, tomllib.TOMLDecodeError, InvalidRequirement) as e:
        raise ModuleResolutionError(f"Cannot read dependencies from {declaration}: {e}") from e


def _load_factory(reference: str) -> RuntimeFactory:
    module_name, _, attr = reference.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


class ModuleResolver:
    """根据目标模块声明的依赖选择运行时工厂"""

    def __init__(
        self,
        runtimes: Mapping[str, str] | None = None,
        version_of: Callable[[str], str] | None = None,
    ):
        self._runtimes = {
            canonicalize_name(name): ref
            for name, ref in (runtimes or config.SUPPORTED_RUNTIMES).items()
        }
        self._version_of = version_of or importlib.metadata.version

    def resolve(self, target_path: str | Path) -> RuntimeResolution:
        """解析目标模块的运行时工厂

        Returns:
            RuntimeResolution（不会抛出 ModuleResolutionError 以外的解析失败）
        """
        target = Path(target_path).resolve()
        declaration = find_dependency_declaration(target.parent)

        requirement: Requirement | None = None
        if declaration is not None:
            try:
                declared = read_declared_requirements(declaration)
            except ModuleResolutionError as e:
                return RuntimeResolution(error=str(e))
            for candidate in declared:
                if canonicalize_name(candidate.name) in self._runtimes:
                    requirement = candidate
                    break

        if requirement is None:
            runtime_name = config.DEFAULT_RUNTIME
            source = "default"
            if runtime_name not in self._runtimes:
                return RuntimeResolution(error=f"No runtime declared for {target} and no default available")
        else:
            runtime_name = canonicalize_name(requirement.name)
            source = str(declaration)

        try:
            installed = self._version_of(runtime_name)
        except importlib.metadata.PackageNotFoundError:
            return RuntimeResolution(error=f"Runtime '{runtime_name}' is not installed")

        if requirement is not None and requirement.specifier and not requirement.specifier.contains(
            installed, prereleases=True
        ):
            return RuntimeResolution(
                error=(
                    f"Installed {runtime_name} {installed} does not satisfy "
                    f"'{requirement}' declared in {declaration}"
                )
            )

        try:
            factory = _load_factory(self._runtimes[runtime_name])
        except (ImportError, AttributeError) as e:
            return RuntimeResolution(error=f"Cannot load runtime factory for {runtime_name}: {e}")

        logger.debug(f"[Loader] Runtime {runtime_name} {installed} ({source})")
        return RuntimeResolution(factory=factory, source=f"{runtime_name} {installed} ({source})")


def resolve_runtime_factory(target_path: str | Path, resolver: ModuleResolver | None = None) -> RuntimeFactory:
    """解析运行时工厂

    Raises:
        ModuleResolutionError: 没有兼容的运行时
    """
    return (resolver or ModuleResolver()).resolve(target_path).unwrap()


# === 插件 / logger / 额外模块 ===


def is_registrable(unit: Any) -> bool:
    """是否为可注册单元：APIRouter、可调用对象或带 register 的对象"""
    if isinstance(unit, APIRouter):
        return True
    if inspect.ismodule(unit):
        return callable(getattr(unit, "register", None)) or isinstance(getattr(unit, "router", None), APIRouter)
    return callable(unit) or callable(getattr(unit, "register", None))


def resolve_plugin(target_path: str | Path) -> tuple[Any, Mapping[str, Any] | None]:
    """加载目标模块作为插件

    模块级 `plugin` 属性优先（默认导出），否则使用模块本身。

    Returns:
        (可注册单元, 插件声明的 options 或 None)

    Raises:
        PluginLoadError: 加载失败或导出的对象不可注册
    """
    try:
        module = load_module_from_path(Path(target_path))
    except Exception as e:
        raise PluginLoadError(f"Failed to load plugin {target_path}: {e}") from e

    unit = getattr(module, "plugin", module)
    if not is_registrable(unit):
        raise PluginLoadError(
            f"{target_path} does not export a registrable plugin "
            f"(expected `plugin`, `register(app, options)` or `router`)"
        )

    declared = getattr(module, "options", None)
    if declared is not None and not isinstance(declared, Mapping):
        raise PluginLoadError(f"{target_path}: `options` must be a mapping, got {type(declared).__name__}")

    logger.debug(f"[Loader] Plugin loaded from {target_path}")
    return unit, declared


def resolve_logger(logging_module: str) -> Any:
    """加载自定义 logger 模块，取其 `logger` 属性

    Raises:
        LoggerLoadError: 加载失败或 logger 不可用
    """
    try:
        module = require_path(logging_module)
    except Exception as e:
        raise LoggerLoadError(f"Failed to load logging module {logging_module}: {e}") from e

    custom = getattr(module, "logger", None)
    if custom is None or not callable(getattr(custom, "error", None)):
        raise LoggerLoadError(f"{logging_module} must export a `logger` with an `error` method")
    return custom


def resolve_extra_modules(paths: Iterable[str]) -> list[ModuleType]:
    """依次加载 --require 模块，忽略空字符串

    Raises:
        PluginLoadError: 任一模块加载失败
    """
    loaded = []
    for path in paths:
        # 忽略 `-r ""` 之类的空值
        if not path:
            continue
        try:
            loaded.append(require_path(path))
        except Exception as e:
            raise PluginLoadError(f"Failed to require {path}: {e}") from e
    return loaded
