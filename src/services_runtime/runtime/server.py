"""
服务端托管协议：绑定命名 socket、回应父进程的活性 socket、运行服务本体、结束后删除 socket 文件。

活性 socket 的意义：
- 父进程（发起激活的客户端）在一次性 socket 上等待唯一一个连接；本服务连接它即表示命名 socket 已就绪，
  父进程随后即可直接连接本服务，无需轮询；
- 每次激活使用唯一的 socket 地址，避免“进程提前退出后 PID 被复用、新进程写出同名 PID 文件”之类的竞态。
连不上活性 socket 默认不算错误（父进程可能已经退出，而服务本身是“按需启动、持久运行”的）；
`die_with_parent_prefailure=True` 时则拒绝以孤儿身份运行。
"""

from __future__ import annotations

import contextlib
import logging
import os
import socket
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from services_runtime.core.cleanable_path import CleanablePath
from services_runtime.core.socket_shims import (
    DEFAULT_UNIX_SOCKETS,
    LISTEN_BACKLOG,
    UnixSocketImplementation,
    bind_blocking_listener,
)
from services_runtime.runtime.paths import get_service_socket_path
from services_runtime.runtime.protocol import Service

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Service[Any])
W = TypeVar("W")
T = TypeVar("T")

PathArg = Union[str, "os.PathLike[str]"]


def _identity_listener(raw_listener: socket.socket) -> Any:
    return raw_listener


class ServerService(Generic[S, W]):
    """
    运行在命名 Unix socket 上的服务（单次使用）。

    说明：
    - 由 `bind` 创建：此时命名 socket 已 bind + listen，socket 文件由本对象负责删除；
    - `run_server` 消费本对象：无论服务本体成功、抛异常，还是因父进程活性失败而放弃，
      结束时都会删除 socket 文件。
    """

    def __init__(
        self,
        *,
        service: S,
        listener: W,
        raw_listener: socket.socket,
        socket_path: CleanablePath,
    ) -> None:
        self._service = service
        self._listener = listener
        self._raw_listener = raw_listener
        self._socket_path = socket_path
        self._consumed = False

    def __repr__(self) -> str:
        return f"ServerService(service={self._service!r}, socket_path={self._socket_path!r})"

    @property
    def service(self) -> S:
        return self._service

    @property
    def listener(self) -> W:
        return self._listener

    @property
    def socket_path(self) -> Path:
        return self._socket_path.path

    @classmethod
    def bind(
        cls,
        service: S,
        base_context_directory: PathArg,
        wrap_listener: Optional[Callable[[socket.socket], W]] = None,
    ) -> "ServerService[S, W]":
        """
        在 `<base_context_directory>/<service.socket_name>` 上打开监听 socket。

        参数：
        - service：服务描述（至少提供 `socket_name`）
        - base_context_directory：服务命名空间根目录（必须存在且可写）
        - wrap_listener：把原始（阻塞）监听 socket 转换为上层抽象（例如带 RPC 分帧的 listener）；默认原样返回

        异常：
        - OSError：路径已被占用（存活或残留的 socket 文件均会失败，且不会被删除）/目录不可写等
        - 其它：wrap_listener 抛出的异常（此时 socket 已关闭、文件已删除）
        """

        socket_path = get_service_socket_path(base_context_directory, service.socket_name)
        raw_listener = bind_blocking_listener(socket_path)
        scoped_path = CleanablePath(socket_path)
        try:
            raw_listener.listen(LISTEN_BACKLOG)
            listener = (wrap_listener or _identity_listener)(raw_listener)
        except BaseException:
            raw_listener.close()
            scoped_path.release()
            raise
        logger.info("Bound service socket @ %s", socket_path)
        return cls(service=service, listener=listener, raw_listener=raw_listener, socket_path=scoped_path)

    async def run_server(
        self,
        server_fn: Callable[[W, S], Awaitable[T]],
        liveness_path: Optional[PathArg] = None,
        die_with_parent_prefailure: bool = False,
        *,
        sockets: Optional[UnixSocketImplementation] = None,
    ) -> T:
        """
        执行活性协议后运行服务本体，并在结束时删除 socket 文件。

        参数：
        - server_fn：服务本体，接收 (listener, service)，返回任意结果
        - liveness_path：父进程的临时活性 socket（可选）；连接后立即关闭，只尝试一次
        - die_with_parent_prefailure：提供了 liveness_path 却连不上时是否直接失败
        - sockets：socket 能力实现（默认 asyncio 实现）

        返回：
        - server_fn 的结果（其异常原样向上）

        异常：
        - RuntimeError：本对象已被消费过
        - OSError：die_with_parent_prefailure=True 且活性 socket 连接失败
        """

        if self._consumed:
            raise RuntimeError("ServerService has already been run")
        self._consumed = True
        sockets = sockets or DEFAULT_UNIX_SOCKETS

        with self._socket_path:
            try:
                if liveness_path is not None:
                    await _ping_liveness(Path(liveness_path), die_with_parent_prefailure, sockets)
                else:
                    logger.info("No liveness path, assuming autonomous")
                return await server_fn(self._listener, self._service)
            finally:
                with contextlib.suppress(OSError):
                    self._raw_listener.close()


async def _ping_liveness(
    parent_socket_path: Path,
    die_with_parent_prefailure: bool,
    sockets: UnixSocketImplementation,
) -> None:
    try:
        raw_socket = await sockets.connect(parent_socket_path)
    except OSError as e:
        if die_with_parent_prefailure:
            logger.error("Could not connect to parent process's ephemeral liveness socket @ %s", parent_socket_path)
            raise
        logger.warning(
            "Couldn't connect to parent process's ephemeral liveness socket @ %s - continuing service anyway, error was: %s",
            parent_socket_path,
            e,
        )
        return

    logger.info("Ping'ed liveness socket @ %s with connection, shutting ephemeral connection.", parent_socket_path)
    with contextlib.closing(raw_socket):
        with contextlib.suppress(OSError):
            await sockets.shutdown(raw_socket)
