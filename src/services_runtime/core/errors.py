"""
运行时错误分类（异常类型）。

说明：
- 发现/绑定/启动/accept 失败直接以底层 `OSError` 子类向上抛出（I/O 错误，不做包装）；
- 活性检查超时使用独立的 `LivenessTimeoutError`，携带配置的超时时长；
- 配置/CLI 层使用结构化的 `FrameworkError`（英文 `code/message/details`）。
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from services_runtime.core.utils import format_duration


class ServicesRuntimeError(Exception):
    """运行时错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """框架结构化问题对象（可用于 CLI 输出中的 issues）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(ServicesRuntimeError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class LivenessTimeoutError(ServicesRuntimeError, TimeoutError):
    """
    等待活性 ping 超时。

    说明：
    - 只在按需启动服务、且子进程未在超时内连接临时活性 socket 时抛出；
    - 子进程不会被终止（慢启动的服务可能仍会在稍后就绪）。
    """

    def __init__(self, *, timeout_sec: float, liveness_path: Optional[Path] = None) -> None:
        """
        参数：
        - timeout_sec：配置的超时时长（秒）
        - liveness_path：本次激活使用的临时活性 socket 路径（可选）
        """

        super().__init__(f"Timed out waiting for service to become live after {format_duration(timeout_sec)}")
        self.timeout_sec = float(timeout_sec)
        self.liveness_path = liveness_path
