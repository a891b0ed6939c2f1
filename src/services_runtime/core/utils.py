"""通用小工具：timeout 包装与时长格式化。"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")

_DURATION_UNITS = (
    ("h", 3600.0),
    ("m", 60.0),
    ("s", 1.0),
)


async def with_timeout(awaitable: Awaitable[T], timeout_sec: float) -> Optional[T]:
    """
    在 timeout 内等待 awaitable 完成。

    参数：
    - awaitable：待等待对象（超时后会被取消）
    - timeout_sec：超时时长（秒）

    返回：
    - 结果：按时完成
    - None：超时

    说明：
    - awaitable 自身抛出的异常（包括 `TimeoutError`）原样向上抛出，与截止时间到期区分开；
    - 截止时间到期时取消 awaitable；若它恰好在取消前完成，仍返回其结果。
    """

    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=float(timeout_sec))
    except BaseException:
        task.cancel()
        raise
    if done:
        return task.result()

    task.cancel()
    await asyncio.wait({task})
    if task.cancelled():
        return None
    return task.result()


def format_duration(seconds: float) -> str:
    """
    将秒数格式化为易读时长（例如 `2s`、`50ms`、`1m 30s`）。

    参数：
    - seconds：时长（秒；负数按 0 处理）
    """

    total_ms = max(0, int(round(float(seconds) * 1000)))
    if total_ms == 0:
        return "0s"

    parts: list[str] = []
    remaining = total_ms / 1000.0
    for unit, size in _DURATION_UNITS:
        count = int(remaining // size)
        if count:
            parts.append(f"{count}{unit}")
            remaining -= count * size
    ms = int(round(remaining * 1000))
    if ms:
        parts.append(f"{ms}ms")
    return " ".join(parts)
