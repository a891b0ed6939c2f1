from __future__ import annotations

import gc
import os
from pathlib import Path

import pytest

from services_runtime.core.cleanable_path import CleanablePath


def test_release_removes_file_and_is_idempotent(tmp_path: Path) -> None:
    p = tmp_path / "a.sock"
    p.write_text("x", encoding="utf-8")

    cp = CleanablePath(p)
    assert cp.path == p
    assert os.fspath(cp) == str(p)
    assert cp.released is False

    cp.release()
    assert not p.exists()
    assert cp.released is True

    # 第二次 release 不应做任何事（即使同名文件被重新创建）
    p.write_text("y", encoding="utf-8")
    cp.release()
    assert p.exists()


def test_release_ignores_missing_file(tmp_path: Path) -> None:
    cp = CleanablePath(tmp_path / "missing.sock")
    cp.release()
    assert cp.released is True


def test_context_manager_releases_on_exception(tmp_path: Path) -> None:
    p = tmp_path / "b.sock"
    p.write_text("x", encoding="utf-8")

    with pytest.raises(RuntimeError):
        with CleanablePath(p):
            raise RuntimeError("boom")
    assert not p.exists()


def test_context_manager_releases_on_normal_exit(tmp_path: Path) -> None:
    p = tmp_path / "c.sock"
    p.write_text("x", encoding="utf-8")

    with CleanablePath(p) as cp:
        assert cp.path.exists()
    assert not p.exists()


def test_unreleased_path_is_removed_when_collected(tmp_path: Path) -> None:
    """未显式 release 的对象被回收时也要删除文件。"""

    p = tmp_path / "d.sock"
    p.write_text("x", encoding="utf-8")

    cp = CleanablePath(p)
    del cp
    gc.collect()
    assert not p.exists()


def test_repr_mentions_path(tmp_path: Path) -> None:
    cp = CleanablePath(tmp_path / "e.sock")
    assert "e.sock" in repr(cp)
    cp.release()
