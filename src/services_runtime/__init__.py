"""
Services Runtime（Python）。

在一个 base context directory 命名空间下管理一组单例后台服务：
- 服务以 `<base>/<socket_name>` 的 Unix socket 对外提供连接；
- 连接时若服务未运行，则按需启动，并通过一次性活性 socket 等待其就绪（不轮询、无 PID 竞态）；
- 服务端托管结束时自动删除 socket 文件。

集成层（可选）：
- 配置加载器（YAML overlay + pydantic 校验）：`services_runtime.config`
- 环境约定与 bundle 构造：`services_runtime.bootstrap`
- CLI：`services-runtime`
"""

from __future__ import annotations

from services_runtime.core.cleanable_path import CleanablePath
from services_runtime.core.errors import FrameworkError, LivenessTimeoutError, ServicesRuntimeError
from services_runtime.runtime import (
    CommandService,
    ReifiedService,
    ServerService,
    Service,
    ServiceBundle,
    connect_to_running_service,
    connect_to_service,
    raw_connection,
    reify,
)

__all__ = [
    "CleanablePath",
    "CommandService",
    "FrameworkError",
    "LivenessTimeoutError",
    "ReifiedService",
    "ServerService",
    "Service",
    "ServiceBundle",
    "ServicesRuntimeError",
    "__version__",
    "connect_to_running_service",
    "connect_to_service",
    "raw_connection",
    "reify",
]

__version__ = "0.3.0"
