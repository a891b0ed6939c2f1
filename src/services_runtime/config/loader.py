"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）；
- 配置只服务于集成层（bootstrap/CLI）：核心协议的 base directory / executor prefix / timeout
  始终以参数形式传入。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import re
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from services_runtime.runtime.paths import validate_socket_name

_SERVICE_NAME_RE = re.compile(r"^[a-z0-9](?:[a-z0-9_-]{0,62}[a-z0-9])?$")


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class DeclaredServiceConfig(BaseModel):
    """
    通过命令启动的服务声明（对应 `CommandService`）。

    说明：
    - 活性参数（liveness_pre_args/liveness_post_args）只在按需启动、传入活性 socket 路径时出现；
    - env 覆盖到调用方环境变量之上。
    """

    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    socket_name: str
    pre_args: List[str] = Field(default_factory=list)
    liveness_pre_args: List[str] = Field(default_factory=list)
    liveness_post_args: List[str] = Field(default_factory=list)
    post_args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    reap_child: bool = False

    @field_validator("socket_name")
    @classmethod
    def _validate_socket_name(cls, v: str) -> str:
        return validate_socket_name(v)


class ServicesRuntimeConfig(BaseModel):
    """服务运行时配置（集成层）。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1, le=1)
    base_context_directory: Optional[str] = None
    executor_prefix: List[str] = Field(default_factory=list)
    liveness_timeout_ms: int = Field(default=2000, ge=1)
    die_with_parent_prefailure: bool = False
    services: Dict[str, DeclaredServiceConfig] = Field(default_factory=dict)

    @field_validator("services")
    @classmethod
    def _validate_service_names(cls, v: Dict[str, DeclaredServiceConfig]) -> Dict[str, DeclaredServiceConfig]:
        for name in v:
            if not _SERVICE_NAME_RE.match(name):
                raise ValueError(f"invalid service name: {name!r} (expected lowercase slug)")
        return v

    @model_validator(mode="after")
    def _validate_unique_socket_names(self) -> "ServicesRuntimeConfig":
        # 同一 base context directory 下 socket 名必须唯一
        seen: Dict[str, str] = {}
        for name, svc in self.services.items():
            other = seen.get(svc.socket_name)
            if other is not None:
                raise ValueError(f"services {other!r} and {name!r} share socket_name {svc.socket_name!r}")
            seen[svc.socket_name] = name
        return self


def load_config_dicts(overlays: Iterable[Mapping[str, Any]]) -> ServicesRuntimeConfig:
    """
    按顺序深度合并多个 dict 并校验。

    参数：
    - overlays：dict 列表（后者覆盖前者）

    异常：
    - pydantic.ValidationError：合并结果不满足 schema
    """

    merged: Dict[str, Any] = {}
    for overlay in overlays:
        _deep_merge(merged, overlay)
    return ServicesRuntimeConfig.model_validate(merged)


def load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """
    读取 YAML 文件并确保根节点是 mapping(dict)。

    异常：
    - ValueError：文件不存在或 YAML 根节点不是 mapping
    """

    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


def load_config(paths: Iterable[Path], *, include_defaults: bool = True) -> ServicesRuntimeConfig:
    """
    加载（内置默认配置 +）YAML overlays 并校验。

    参数：
    - paths：overlay 文件路径（按顺序合并）
    - include_defaults：是否先合并内置默认配置
    """

    overlays: List[Dict[str, Any]] = []
    if include_defaults:
        from services_runtime.config.defaults import load_default_config_dict

        overlays.append(load_default_config_dict())
    for p in paths:
        overlays.append(load_yaml_mapping(Path(p)))
    return load_config_dicts(overlays)
