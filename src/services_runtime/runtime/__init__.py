"""
按需激活的单例服务（Unix domain socket）。

- 客户端：`connect_to_service` / `connect_to_running_service`
- 服务端：`ServerService.bind(...).run_server(...)`
- 上下文绑定：`ReifiedService` / `ServiceBundle`
- 命令型服务：`CommandService`
"""

from __future__ import annotations

from services_runtime.runtime.client import connect_to_running_service, connect_to_service
from services_runtime.runtime.command import CommandService, raw_connection
from services_runtime.runtime.paths import get_random_sockpath, get_service_socket_path
from services_runtime.runtime.protocol import Service
from services_runtime.runtime.reified import ReifiedService, ServiceBundle, reify
from services_runtime.runtime.server import ServerService

__all__ = [
    "CommandService",
    "ReifiedService",
    "ServerService",
    "Service",
    "ServiceBundle",
    "connect_to_running_service",
    "connect_to_service",
    "get_random_sockpath",
    "get_service_socket_path",
    "raw_connection",
    "reify",
]
