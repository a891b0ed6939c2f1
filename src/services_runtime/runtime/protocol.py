"""
Service 协议：描述一个可按需启动、位于 base context directory 下的单例服务。

概念：
- base context directory：运行时命名空间根目录。不同目录下的同一组服务互不干扰
  （例如每个用户一个目录，即可做到“每用户单例”）。
- executor prefix：启动命令前缀。若提供，应作为实际可执行程序放在所有服务命令之前；
  可用于 `/usr/bin/env` 包装、替换某个服务的实现、或为服务加入额外的探针/通知机制。
- socket name：服务在 base context directory 下监听的 Unix socket 文件名。
  服务是否运行，以该 socket 能否连接为准（连接失败即尝试启动服务）。

socket 文件的创建/清理、服务本体的运行不在本协议内，由 `ServerService` 负责。
"""

from __future__ import annotations

import socket
import subprocess
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, TypeVar, runtime_checkable

ConnT_co = TypeVar("ConnT_co", covariant=True)


@runtime_checkable
class Service(Protocol[ConnT_co]):
    """
    单个可启动服务的能力集合。

    约束：
    - `socket_name` 在同一 base context directory 内必须唯一，否则服务会互相抢占 socket；
    - `launch` 必须“同步启动、立即返回”（不等待子进程结束）；
    - `after_liveness` 为可选钩子；未实现时视为 no-op。
    """

    @property
    def socket_name(self) -> str:
        """base context directory 下的 socket 文件名。"""

        ...

    def wrap_connection(self, bare_stream: socket.socket) -> ConnT_co:
        """把阻塞模式的原始 Unix stream 包装为客户端连接对象（失败时抛异常）。"""

        ...

    def launch(
        self,
        executor_prefix: Optional[Sequence[str]],
        liveness_path: Optional[Path],
    ) -> subprocess.Popen:
        """
        同步启动服务进程。

        参数：
        - executor_prefix：命令前缀（若提供，应放在命令行最前面）
        - liveness_path：临时活性 socket 路径（若提供，应传递给服务进程，通常通过命令行参数）

        说明：
        - 服务进程应连接 liveness_path 后立即关闭连接（使用 `ServerService.run_server` 时自动完成）；
        - 活性超时由调用方统一施加。
        """

        ...

    async def after_liveness(self, child: Any) -> None:
        """
        子进程通过活性检查之后、真正连接之前调用。

        说明：
        - 默认实现直接丢弃 child，不 wait，服务进程与调用方生命周期解耦（持久化服务）；
        - 若希望服务生命周期与调用方绑定，可在这里把 child 交给后台任务/线程去 wait；
          注意这是 async 函数，不要在这里阻塞；
        - 服务已在运行（无需启动）时，本钩子与 `launch` 都不会被调用。
        """

        return None


def is_service(obj: Any) -> bool:
    """判断 obj 是否满足 Service 协议的必需部分（`after_liveness` 可选）。"""

    if isinstance(obj, type):
        return False
    return (
        isinstance(getattr(obj, "socket_name", None), str)
        and callable(getattr(obj, "wrap_connection", None))
        and callable(getattr(obj, "launch", None))
    )


async def run_after_liveness(service: Any, child: Any) -> None:
    """调用 service 的 `after_liveness` 钩子；未实现时为 no-op。"""

    hook = getattr(service, "after_liveness", None)
    if hook is None:
        return
    await hook(child)
