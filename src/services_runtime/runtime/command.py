"""
CommandService：最常见的服务形态，通过执行一条命令启动，以命名 Unix socket 对外服务。

命令行由有序 token 列表拼成：
    [executor_prefix...] command [pre_args...]
        ([liveness_pre_args...] <liveness_path> [liveness_post_args...])   # 仅在传入活性路径时出现
        [post_args...]

说明：
- base context directory 不会传给命令。服务应通过环境约定（XDG 目录、固定全局目录、环境变量等）
  自行定位命名空间，其它程序也才能用同样的方式找到它；
- executor prefix 存在时，其第一个 token 就是实际执行的程序。
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from services_runtime.runtime.paths import validate_socket_name

logger = logging.getLogger(__name__)

ConnT = TypeVar("ConnT")


def raw_connection(bare_stream: socket.socket) -> socket.socket:
    """原样返回阻塞 Unix stream（`raw` 包装方式）。"""

    return bare_stream


def _as_str_tuple(values: Optional[Sequence[Any]]) -> Tuple[str, ...]:
    return tuple(str(x) for x in (values or ()))


@dataclass(frozen=True)
class CommandService(Generic[ConnT]):
    """
    通过命令启动的服务描述（实现 `Service` 协议）。

    字段：
    - command：要执行的程序（无 executor prefix 时即 argv[0]）
    - socket_name：base context directory 下的 socket 文件名
    - wrap：把阻塞 Unix stream 包装为客户端连接对象；默认原样返回
    - pre_args / post_args：始终出现的参数（活性参数之前/之后）
    - liveness_pre_args / liveness_post_args：仅在传入活性路径时出现，夹住活性路径本身
    - env：覆盖到 `os.environ` 之上的环境变量
    - cwd：子进程工作目录（None 表示继承）
    - reap_child：活性检查通过后是否在后台线程 wait 子进程（默认不跟踪，服务独立存活）
    """

    command: str
    socket_name: str
    wrap: Callable[[socket.socket], ConnT] = field(default=raw_connection, repr=False)  # type: ignore[assignment]
    pre_args: Tuple[str, ...] = ()
    liveness_pre_args: Tuple[str, ...] = ()
    liveness_post_args: Tuple[str, ...] = ()
    post_args: Tuple[str, ...] = ()
    env: Optional[Mapping[str, str]] = None
    cwd: Optional[str] = None
    reap_child: bool = False

    def __post_init__(self) -> None:
        if not str(self.command or "").strip():
            raise ValueError("command must be non-empty")
        validate_socket_name(self.socket_name)
        object.__setattr__(self, "pre_args", _as_str_tuple(self.pre_args))
        object.__setattr__(self, "liveness_pre_args", _as_str_tuple(self.liveness_pre_args))
        object.__setattr__(self, "liveness_post_args", _as_str_tuple(self.liveness_post_args))
        object.__setattr__(self, "post_args", _as_str_tuple(self.post_args))

    @classmethod
    def from_config(cls, declared: Any) -> "CommandService[socket.socket]":
        """
        由配置项（`DeclaredServiceConfig`）构造 raw 连接的 CommandService。

        参数：
        - declared：具有 command/socket_name/pre_args/... 字段的配置对象
        """

        return cls(  # type: ignore[return-value]
            command=declared.command,
            socket_name=declared.socket_name,
            pre_args=tuple(declared.pre_args),
            liveness_pre_args=tuple(declared.liveness_pre_args),
            liveness_post_args=tuple(declared.liveness_post_args),
            post_args=tuple(declared.post_args),
            env=dict(declared.env) if declared.env else None,
            cwd=declared.cwd,
            reap_child=bool(declared.reap_child),
        )

    def build_argv(self, executor_prefix: Optional[Sequence[str]], liveness_path: Optional[Path]) -> List[str]:
        """
        拼出完整命令行。

        参数：
        - executor_prefix：命令前缀（可选）
        - liveness_path：临时活性 socket 路径（可选；None 时省略全部活性参数）
        """

        argv: List[str] = [str(x) for x in (executor_prefix or ())]
        argv.append(str(self.command))
        argv.extend(self.pre_args)
        if liveness_path is not None:
            argv.extend(self.liveness_pre_args)
            argv.append(os.fspath(liveness_path))
            argv.extend(self.liveness_post_args)
        argv.extend(self.post_args)
        return argv

    def wrap_connection(self, bare_stream: socket.socket) -> ConnT:
        return self.wrap(bare_stream)

    def launch(
        self,
        executor_prefix: Optional[Sequence[str]],
        liveness_path: Optional[Path],
    ) -> subprocess.Popen:
        """
        启动服务进程（不等待）。

        说明：
        - 子进程成为新 session leader，不随调用方终端信号退出；
        - stdin 指向 /dev/null，stdout/stderr 继承调用方。

        异常：
        - OSError：程序不存在/不可执行等
        """

        argv = self.build_argv(executor_prefix, liveness_path)
        merged_env = dict(os.environ)
        if self.env:
            merged_env.update({str(k): str(v) for k, v in self.env.items()})
        logger.info("Starting service process: %s", argv)
        return subprocess.Popen(  # noqa: S603
            argv,
            cwd=self.cwd,
            env=merged_env,
            stdin=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
        )

    async def after_liveness(self, child: Any) -> None:
        if not self.reap_child:
            return
        waiter = getattr(child, "wait", None)
        if not callable(waiter):
            return
        # daemon 线程：回收子进程但不阻塞调用方退出
        t = threading.Thread(target=waiter, name=f"reap-{self.socket_name}", daemon=True)
        t.start()
