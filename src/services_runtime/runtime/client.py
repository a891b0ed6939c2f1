"""
客户端激活协议：连接已运行的服务，或按需启动后再连接。

流程（connect_to_service）：
1) 尝试连接 `<base>/<socket_name>`；成功则 wrap 并返回（wrap 失败原样抛出，不触发启动）；
2) 连接失败：在临时目录创建一次性活性 socket（`temp-<16 hex>.sock`）并监听；
3) 调用 `service.launch(executor_prefix, ephemeral_path)` 启动子进程；
4) 在 timeout 内等待唯一一个入站连接（子进程的命名 socket 已就绪的证明）；
5) 立即 shutdown 该连接并删除临时 socket 文件；
6) 调用 `after_liveness(child)`；
7) 再连接一次并返回结果（不再重试启动）。

说明：
- 不轮询、不依赖 PID 文件：唯一的临时 socket 路径避免了 PID 复用带来的竞态；
- 超时不会终止子进程：慢启动的服务仍可能稍后就绪，后续调用会直接连上；
- 并发激活同一服务不做去重：双方都可能启动进程，最终只有一个能 bind 命名 socket。
"""

from __future__ import annotations

import contextlib
import logging
import os
import socket
from pathlib import Path
from typing import Optional, Sequence, TypeVar, Union

from services_runtime.core.cleanable_path import CleanablePath
from services_runtime.core.errors import LivenessTimeoutError
from services_runtime.core.socket_shims import DEFAULT_UNIX_SOCKETS, UnixSocketImplementation
from services_runtime.core.utils import with_timeout
from services_runtime.runtime.paths import get_random_sockpath, get_service_socket_path
from services_runtime.runtime.protocol import Service, run_after_liveness

logger = logging.getLogger(__name__)

ConnT = TypeVar("ConnT")

PathArg = Union[str, "os.PathLike[str]"]


async def _connect_raw(
    service: Service[ConnT],
    base_context_directory: PathArg,
    sockets: UnixSocketImplementation,
) -> socket.socket:
    server_socket_path = get_service_socket_path(base_context_directory, service.socket_name)
    logger.info("Attempting connection to service @ %s", server_socket_path)
    try:
        stream = await sockets.connect(server_socket_path)
    except OSError:
        logger.info("Failed to connect to service @ %s", server_socket_path)
        raise
    logger.info("Successfully obtained async unix socket")
    return stream


def _wrap(service: Service[ConnT], stream: socket.socket, sockets: UnixSocketImplementation) -> ConnT:
    try:
        std_stream = sockets.to_blocking(stream)
        logger.debug("Wrapping into the final client connection")
        return service.wrap_connection(std_stream)
    except BaseException:
        stream.close()
        raise


async def connect_to_running_service(
    service: Service[ConnT],
    base_context_directory: PathArg,
    *,
    sockets: Optional[UnixSocketImplementation] = None,
) -> ConnT:
    """
    连接已运行的服务（不会尝试启动）。

    参数：
    - service：服务描述
    - base_context_directory：服务命名空间根目录
    - sockets：socket 能力实现（默认 asyncio 实现）

    异常：
    - OSError：命名 socket 不存在或不可连接
    - 其它：`wrap_connection` 抛出的异常原样向上
    """

    sockets = sockets or DEFAULT_UNIX_SOCKETS
    stream = await _connect_raw(service, base_context_directory, sockets)
    return _wrap(service, stream, sockets)


async def connect_to_service(
    service: Service[ConnT],
    executor_prefix: Optional[Sequence[str]],
    base_context_directory: PathArg,
    liveness_timeout_sec: float,
    *,
    sockets: Optional[UnixSocketImplementation] = None,
) -> ConnT:
    """
    连接服务；服务未运行时按需启动并等待活性 ping。

    参数：
    - service：服务描述
    - executor_prefix：启动命令前缀（可选）
    - base_context_directory：服务命名空间根目录
    - liveness_timeout_sec：启动后等待活性 ping 的最长时间（秒）
    - sockets：socket 能力实现（默认 asyncio 实现）

    异常：
    - OSError：临时 socket 创建失败 / 子进程启动失败 / 启动后仍无法连接
    - LivenessTimeoutError：超时未收到活性 ping（子进程保持运行）
    - 其它：`wrap_connection` / `after_liveness` 抛出的异常原样向上
    """

    sockets = sockets or DEFAULT_UNIX_SOCKETS
    try:
        stream = await _connect_raw(service, base_context_directory, sockets)
    except OSError as e:
        logger.warning("Error connecting to existing service - %s - attempting on-demand service start", e)
    else:
        return _wrap(service, stream, sockets)

    child = await _activate(service, executor_prefix, liveness_timeout_sec, sockets)

    await run_after_liveness(service, child)
    logger.info("Successfully received ephemeral liveness ping - trying to connect to service again.")
    return await connect_to_running_service(service, base_context_directory, sockets=sockets)


async def _activate(
    service: Service[ConnT],
    executor_prefix: Optional[Sequence[str]],
    liveness_timeout_sec: float,
    sockets: UnixSocketImplementation,
):
    """启动服务进程并等待一次活性连接；返回子进程句柄。"""

    ephemeral_path = get_random_sockpath()
    logger.info("Creating ephemeral liveness socket @ %s", ephemeral_path)
    try:
        ephemeral_listener = await sockets.bind(ephemeral_path)
    except OSError as e:
        logger.error("Couldn't create ephemeral liveness socket @ %s - %s", ephemeral_path, e)
        raise

    # bind 成功后才接管文件：bind 失败时不能删掉别人的 socket 文件
    with CleanablePath(ephemeral_path), contextlib.closing(ephemeral_listener):
        try:
            child = service.launch(
                tuple(executor_prefix) if executor_prefix is not None else None,
                Path(ephemeral_path),
            )
        except Exception as e:
            logger.error("Could not start child service process - %s", e)
            raise

        liveness_stream = await with_timeout(sockets.accept_one(ephemeral_listener), liveness_timeout_sec)
        if liveness_stream is None:
            err = LivenessTimeoutError(timeout_sec=liveness_timeout_sec, liveness_path=ephemeral_path)
            logger.error(
                "Failed to receive liveness ping for service on ephemeral socket %s - %s", ephemeral_path, err
            )
            raise err

        with contextlib.closing(liveness_stream):
            await sockets.shutdown(liveness_stream)

    return child
