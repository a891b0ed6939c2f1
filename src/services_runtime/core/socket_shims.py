"""
Unix socket 异步原语（connect/bind/accept/shutdown/转阻塞）。

设计目标：
- 激活/托管协议只依赖 `UnixSocketImplementation` 这一最小能力集合，便于测试替换；
- 默认实现基于 asyncio 事件循环的 `sock_*` 方法，socket 本体始终是标准库 `socket.socket`。
"""

from __future__ import annotations

import asyncio
import os
import socket
from pathlib import Path
from typing import Protocol, Union, runtime_checkable

PathArg = Union[str, "os.PathLike[str]"]

LISTEN_BACKLOG = 128


@runtime_checkable
class UnixSocketImplementation(Protocol):
    """
    异步 Unix socket 能力协议。

    约束：
    - `connect`/`bind`/`accept_one` 返回的 socket 均为非阻塞模式；
    - `to_blocking` 把非阻塞流转换为普通阻塞 `socket.socket`（交给 `wrap_connection`）；
    - `bind` 不得删除已存在的路径。
    """

    async def connect(self, path: PathArg) -> socket.socket:
        """连接到 path 上的 Unix socket。"""

        ...

    async def bind(self, path: PathArg) -> socket.socket:
        """在 path 上创建监听 socket。"""

        ...

    async def accept_one(self, listener: socket.socket) -> socket.socket:
        """等待并接受一个入站连接。"""

        ...

    async def shutdown(self, stream: socket.socket) -> None:
        """双向关闭流（不 close fd）。"""

        ...

    def to_blocking(self, stream: socket.socket) -> socket.socket:
        """转换为阻塞模式的标准 socket。"""

        ...


class AsyncioUnixSockets:
    """基于 asyncio 的默认实现。"""

    async def connect(self, path: PathArg) -> socket.socket:
        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.setblocking(False)
            await loop.sock_connect(sock, os.fspath(path))
        except BaseException:
            sock.close()
            raise
        return sock

    async def bind(self, path: PathArg) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(os.fspath(path))
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return sock

    async def accept_one(self, listener: socket.socket) -> socket.socket:
        loop = asyncio.get_running_loop()
        conn, _ = await loop.sock_accept(listener)
        return conn

    async def shutdown(self, stream: socket.socket) -> None:
        stream.shutdown(socket.SHUT_RDWR)

    def to_blocking(self, stream: socket.socket) -> socket.socket:
        stream.setblocking(True)
        return stream


DEFAULT_UNIX_SOCKETS: UnixSocketImplementation = AsyncioUnixSockets()


def bind_blocking_listener(path: Path) -> socket.socket:
    """
    同步绑定并监听 path（服务端命名 socket 使用）。

    说明：
    - 路径已存在（无论 socket 是否存活）时 bind 失败并抛 OSError，不做隐式 unlink；
    - 失败时关闭已创建的 socket。
    """

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(os.fspath(path))
    except BaseException:
        sock.close()
        raise
    return sock
