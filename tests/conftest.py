from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Iterator

import pytest


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    """
    短路径临时目录（`/tmp/sr-xxxx`）。

    说明：
    - AF_UNIX socket 路径长度上限约 108 字节；pytest 的 tmp_path 含测试名，容易超长。
    """

    d = Path(tempfile.mkdtemp(prefix="sr-"))
    try:
        yield d
    finally:
        shutil.rmtree(d, ignore_errors=True)
