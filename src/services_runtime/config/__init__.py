"""配置加载（YAML overlays + pydantic 校验）。"""

from __future__ import annotations

from services_runtime.config.loader import (
    DeclaredServiceConfig,
    ServicesRuntimeConfig,
    load_config,
    load_config_dicts,
)

__all__ = ["DeclaredServiceConfig", "ServicesRuntimeConfig", "load_config", "load_config_dicts"]
