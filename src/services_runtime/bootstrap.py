"""
Bootstrap Layer（集成层：配置发现/环境约定/来源追踪）。

设计目标：
- 保持核心协议无隐式 I/O：`connect_to_service` / `ServerService` 不读取环境变量与配置文件；
- base context directory 应由环境推导（而不是通过命令行传给服务），这样服务本身与其它程序
  可以按同样的约定找到同一个命名空间；本模块提供这一约定的默认实现。

环境变量：
- `SERVICES_RUNTIME_CONFIG_PATHS`：overlay YAML 路径（逗号/分号分隔；相对路径相对 cwd）
- `SERVICES_RUNTIME_BASE_DIR`：base context directory（最高优先级）
- `SERVICES_RUNTIME_EXECUTOR_PREFIX`：executor prefix（shlex 切分）
"""

from __future__ import annotations

import os
import shlex
import socket
import tempfile
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar, Union

from services_runtime.config.defaults import load_default_config_dict
from services_runtime.config.loader import ServicesRuntimeConfig, load_yaml_mapping
from services_runtime.core.errors import FrameworkError
from services_runtime.runtime.command import CommandService
from services_runtime.runtime.protocol import Service
from services_runtime.runtime.reified import ServiceBundle
from services_runtime.runtime.server import ServerService

ENV_CONFIG_PATHS = "SERVICES_RUNTIME_CONFIG_PATHS"
ENV_BASE_DIR = "SERVICES_RUNTIME_BASE_DIR"
ENV_EXECUTOR_PREFIX = "SERVICES_RUNTIME_EXECUTOR_PREFIX"

DEFAULT_NAMESPACE_DIRNAME = "services-runtime"

T = TypeVar("T")


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    - env：环境变量映射（默认 os.environ）
    """

    v = (os.environ if env is None else env).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白、去空项、保序）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def discover_overlay_paths(*, cwd: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现：读取 `SERVICES_RUNTIME_CONFIG_PATHS`（相对路径相对 cwd），按 canonical path 去重保序。
    """

    base = Path(cwd).resolve() if cwd is not None else Path.cwd().resolve()
    raw = _get_env_nonempty(ENV_CONFIG_PATHS, env=env) or ""
    overlays: list[Path] = []
    seen: set[Path] = set()
    for p in _split_paths(raw):
        pp = Path(p).expanduser()
        pp = (base / pp).resolve() if not pp.is_absolute() else pp.resolve()
        if pp in seen:
            continue
        seen.add(pp)
        overlays.append(pp)
    return overlays


def _record_leaf_sources(value: Any, *, prefix: str, sources: Dict[str, str], label: str) -> None:
    """递归记录 mapping 的叶子字段来源（`sources[dotted.path] = label`）。"""

    if isinstance(value, Mapping) and value:
        for k, v in value.items():
            k2 = str(k)
            path = f"{prefix}.{k2}" if prefix else k2
            _record_leaf_sources(v, prefix=path, sources=sources, label=label)
        return
    sources[prefix] = label


def _deep_merge_with_sources(
    base: Dict[str, Any],
    overlay: Mapping[str, Any],
    *,
    sources: Dict[str, str],
    label: str,
    prefix: str = "",
) -> None:
    """将 overlay 深度合并到 base，并同步写入叶子字段来源。"""

    for key, overlay_value in overlay.items():
        k = str(key)
        path = f"{prefix}.{k}" if prefix else k

        if k in base and isinstance(base[k], dict) and isinstance(overlay_value, Mapping):
            _deep_merge_with_sources(base[k], overlay_value, sources=sources, label=label, prefix=path)  # type: ignore[arg-type]
            continue

        base[k] = deepcopy(overlay_value)
        _record_leaf_sources(overlay_value, prefix=path, sources=sources, label=label)


def default_base_context_directory(*, env: Optional[Mapping[str, str]] = None) -> Path:
    """
    无显式配置时的 base context directory：
    1) `$XDG_RUNTIME_DIR/services-runtime`
    2) `<tempdir>/services-runtime-<uid>`
    """

    xdg = _get_env_nonempty("XDG_RUNTIME_DIR", env=env)
    if xdg:
        return Path(xdg) / DEFAULT_NAMESPACE_DIRNAME
    return Path(tempfile.gettempdir()) / f"{DEFAULT_NAMESPACE_DIRNAME}-{os.getuid()}"


@dataclass(frozen=True)
class ResolvedServicesConfig:
    """
    bootstrap 解析后的有效配置（含来源追踪）。

    字段：
    - config：校验后的配置对象
    - base_context_directory：最终生效的 base context directory（绝对路径）
    - executor_prefix：最终生效的 executor prefix（空 tuple 视为未设置）
    - liveness_timeout_sec：活性超时（秒）
    - die_with_parent_prefailure：服务端连不上父进程活性 socket 时是否直接失败
    - overlay_paths：参与合并的 overlay 文件路径（字符串化）
    - sources：关键字段来源（例如 `base_context_directory` 来源于 env/yaml/default）
    """

    config: ServicesRuntimeConfig
    base_context_directory: Path
    executor_prefix: Tuple[str, ...]
    liveness_timeout_sec: float
    die_with_parent_prefailure: bool = False
    overlay_paths: List[str] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)


def resolve_effective_config(
    *,
    config_paths: Optional[List[Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> ResolvedServicesConfig:
    """
    解析有效配置（env > yaml overlays > 内置默认），并返回来源追踪。

    参数：
    - config_paths：显式 overlay 路径；为 None 时按 `discover_overlay_paths` 发现
    - env：环境变量映射（默认 os.environ）
    - cwd：相对路径锚点（默认当前目录）

    异常：
    - ValueError：overlay 文件不存在或根节点不是 mapping
    - pydantic.ValidationError：合并后的配置不合法
    """

    anchor = Path(cwd).resolve() if cwd is not None else Path.cwd().resolve()
    if config_paths is None:
        overlay_paths = discover_overlay_paths(cwd=anchor, env=env)
    else:
        overlay_paths = [(anchor / Path(p).expanduser()).resolve() for p in config_paths]

    entries: list[Tuple[str, Dict[str, Any]]] = [("embedded_default", load_default_config_dict())]
    for p in overlay_paths:
        entries.append((f"overlay:{p}", load_yaml_mapping(p)))

    merged: Dict[str, Any] = {}
    yaml_sources: Dict[str, str] = {}
    for label, d in entries:
        _deep_merge_with_sources(merged, d, sources=yaml_sources, label=label)

    cfg = ServicesRuntimeConfig.model_validate(merged)
    sources: Dict[str, str] = {}

    # base_context_directory
    v = _get_env_nonempty(ENV_BASE_DIR, env=env)
    if v is not None:
        base_dir = Path(v)
        sources["base_context_directory"] = f"env:{ENV_BASE_DIR}"
    elif cfg.base_context_directory:
        base_dir = Path(os.path.expandvars(cfg.base_context_directory))
        label = yaml_sources.get("base_context_directory", "embedded_default")
        sources["base_context_directory"] = f"yaml:{label}#base_context_directory"
    else:
        base_dir = default_base_context_directory(env=env)
        sources["base_context_directory"] = "default"
    base_dir = base_dir.expanduser()
    if not base_dir.is_absolute():
        base_dir = anchor / base_dir
    base_dir = base_dir.resolve()

    # executor_prefix
    v = _get_env_nonempty(ENV_EXECUTOR_PREFIX, env=env)
    if v is not None:
        executor_prefix = tuple(shlex.split(v))
        sources["executor_prefix"] = f"env:{ENV_EXECUTOR_PREFIX}"
    else:
        executor_prefix = tuple(cfg.executor_prefix)
        label = yaml_sources.get("executor_prefix", "embedded_default")
        sources["executor_prefix"] = f"yaml:{label}#executor_prefix"

    return ResolvedServicesConfig(
        config=cfg,
        base_context_directory=base_dir,
        executor_prefix=executor_prefix,
        liveness_timeout_sec=cfg.liveness_timeout_ms / 1000.0,
        die_with_parent_prefailure=bool(cfg.die_with_parent_prefailure),
        overlay_paths=[str(p) for p in overlay_paths],
        sources=sources,
    )


def build_service_bundle(resolved: ResolvedServicesConfig, *, create_base_dir: bool = True) -> ServiceBundle:
    """
    由解析后的配置构造 ServiceBundle（每个声明项对应一个 CommandService）。

    参数：
    - resolved：`resolve_effective_config` 的结果
    - create_base_dir：是否创建 base context directory（权限 0700）

    异常：
    - FrameworkError：base context directory 无法创建（code=BASE_DIR_UNAVAILABLE）
    """

    if create_base_dir:
        try:
            resolved.base_context_directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise FrameworkError(
                code="BASE_DIR_UNAVAILABLE",
                message="Base context directory cannot be created.",
                details={"base_context_directory": str(resolved.base_context_directory), "reason": str(exc)},
            ) from exc
    services = {name: CommandService.from_config(decl) for name, decl in resolved.config.services.items()}
    return ServiceBundle(
        resolved.base_context_directory,
        resolved.executor_prefix or None,
        services=services,
    )


async def host_service(
    service: Service[Any],
    server_fn: Callable[[Any, Any], Awaitable[T]],
    *,
    liveness_path: Optional[Union[str, "os.PathLike[str]"]] = None,
    resolved: Optional[ResolvedServicesConfig] = None,
    base_context_directory: Optional[Union[str, "os.PathLike[str]"]] = None,
    die_with_parent_prefailure: Optional[bool] = None,
    wrap_listener: Optional[Callable[[socket.socket], Any]] = None,
) -> T:
    """
    服务端入口：按环境约定定位命名空间，绑定命名 socket 并运行服务本体。

    参数：
    - service：服务描述（至少提供 `socket_name`）
    - server_fn：服务本体，接收 (listener, service)
    - liveness_path：父进程传入的临时活性 socket（可选）
    - resolved：已解析的配置；为 None 时调用 `resolve_effective_config()`
    - base_context_directory：显式覆盖 base context directory
    - die_with_parent_prefailure：显式覆盖配置中的同名开关
    - wrap_listener：见 `ServerService.bind`

    说明：
    - 与客户端使用同一套推导规则，服务与调用方因此落在同一命名空间；
    - base context directory 不存在时以 0700 创建。
    """

    if resolved is None:
        resolved = resolve_effective_config()
    base_dir = Path(base_context_directory) if base_context_directory is not None else resolved.base_context_directory
    base_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    die = resolved.die_with_parent_prefailure if die_with_parent_prefailure is None else bool(die_with_parent_prefailure)

    handle = ServerService.bind(service, base_dir, wrap_listener)
    return await handle.run_server(server_fn, liveness_path=liveness_path, die_with_parent_prefailure=die)
