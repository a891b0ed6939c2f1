"""
CleanablePath：作用域结束时删除所引用文件的路径包装。

用途：
- 服务端的命名 socket 文件（hosting 结束后删除）；
- 客户端的临时活性 socket 文件（握手后删除）。
"""

from __future__ import annotations

import contextlib
import os
from pathlib import Path
from typing import Any, Union


class CleanablePath(os.PathLike):
    """
    持有一个文件路径；release 时 best-effort 删除该文件。

    约束：
    - release 幂等；删除失败（文件不存在/权限不足等）静默忽略，不覆盖主流程的结果或异常；
    - 支持 `with` 语法，保证任何退出路径（正常返回/异常/提前 return）都会 release；
    - 未显式 release 的对象在被回收时也会 release。
    """

    def __init__(self, path: Union[str, "os.PathLike[str]"]) -> None:
        self._path = Path(path)
        self._released = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def released(self) -> bool:
        return self._released

    def __fspath__(self) -> str:
        return os.fspath(self._path)

    def __repr__(self) -> str:
        return f"CleanablePath({str(self._path)!r}, released={self._released})"

    def release(self) -> None:
        """删除文件（best-effort，仅执行一次）。"""

        if self._released:
            return
        self._released = True
        with contextlib.suppress(OSError):
            self._path.unlink()

    def __enter__(self) -> "CleanablePath":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    def __del__(self) -> None:
        # 解释器退出阶段属性可能已失效
        if getattr(self, "_released", True):
            return
        self.release()
