from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Union


def validate_socket_name(socket_name: str) -> str:
    """
    校验 socket 文件名（必须是 base context directory 下的普通文件名）。

    异常：
    - ValueError：为空、包含路径分隔符，或为 `.`/`..`
    """

    name = str(socket_name or "")
    if not name.strip():
        raise ValueError("socket_name must be non-empty")
    if os.sep in name or (os.altsep and os.altsep in name):
        raise ValueError(f"socket_name must be a plain file name: {name!r}")
    if name in (".", ".."):
        raise ValueError(f"socket_name must be a plain file name: {name!r}")
    return name


def get_service_socket_path(base_context_directory: Union[str, "os.PathLike[str]"], socket_name: str) -> Path:
    """
    获取服务的命名 socket 路径：`<base_context_directory>/<socket_name>`。

    参数：
    - base_context_directory：服务命名空间根目录
    - socket_name：服务的 socket 文件名
    """

    return Path(base_context_directory) / validate_socket_name(socket_name)


def get_random_sockpath() -> Path:
    """
    生成临时活性 socket 路径：`<tempdir>/temp-XXXXXXXXXXXXXXXX.sock`。

    说明：
    - 16 位小写十六进制（64 bit），来自 `secrets`（CSPRNG），并发激活间冲突概率可忽略；
    - 只生成路径，不创建文件。
    """

    return Path(tempfile.gettempdir()) / f"temp-{secrets.randbits(64):016x}.sock"
