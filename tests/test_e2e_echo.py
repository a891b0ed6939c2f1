"""
端到端：按需启动真实的 echo 服务进程（tests/fixtures/echo_service.py）。

说明：
- 进程以 `sys.executable` 启动，PYTHONPATH 指向 src；
- 每个测试结束时向 launch log 中记录的 pid 发 SIGTERM，并等待 socket 文件被服务端删除。
"""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Iterator, Tuple

import pytest

from service_support import echo_command_service, echo_roundtrip, launched_pids, terminate_launched
from services_runtime.core.errors import LivenessTimeoutError
from services_runtime.runtime import client as client_mod
from services_runtime.runtime.client import connect_to_service
from services_runtime.runtime.reified import ServiceBundle, reify

pytestmark = pytest.mark.skipif(os.name == "nt", reason="Unix sockets only")

LIVENESS_TIMEOUT_SEC = 15.0


@pytest.fixture
def echo_env(short_tmp: Path) -> Iterator[Tuple[Path, Path]]:
    base = short_tmp / "ctx"
    base.mkdir()
    launch_log = short_tmp / "launches.log"
    try:
        yield base, launch_log
    finally:
        terminate_launched(launch_log, base / "echo.sock")


def test_echo_service_is_started_on_demand_and_echoes(echo_env: Tuple[Path, Path]) -> None:
    base, launch_log = echo_env
    svc = echo_command_service(base, launch_log)

    conn = asyncio.run(connect_to_service(svc, None, base, LIVENESS_TIMEOUT_SEC))
    with conn:
        assert echo_roundtrip(conn, b"ping") == b"ping"
    assert (base / "echo.sock").exists()
    assert len(launched_pids(launch_log)) == 1


def test_two_connects_launch_exactly_once(echo_env: Tuple[Path, Path]) -> None:
    base, launch_log = echo_env
    svc = echo_command_service(base, launch_log)

    first = asyncio.run(connect_to_service(svc, None, base, LIVENESS_TIMEOUT_SEC))
    second = asyncio.run(connect_to_service(svc, None, base, LIVENESS_TIMEOUT_SEC))
    with first, second:
        assert echo_roundtrip(first, b"one") == b"one"
        assert echo_roundtrip(second, b"two") == b"two"
    assert len(launched_pids(launch_log)) == 1


def test_echo_round_trip_preserves_bytes(echo_env: Tuple[Path, Path]) -> None:
    base, launch_log = echo_env
    svc = echo_command_service(base, launch_log)
    payload = bytes(range(256)) * 64

    conn = asyncio.run(connect_to_service(svc, None, base, LIVENESS_TIMEOUT_SEC))
    with conn:
        assert echo_roundtrip(conn, payload) == payload


def test_missing_program_yields_launch_error_and_no_leftover_socket(
    echo_env: Tuple[Path, Path], short_tmp: Path, monkeypatch
) -> None:  # type: ignore[no-untyped-def]
    base, launch_log = echo_env
    svc = echo_command_service(base, launch_log, command=str(short_tmp / "no-such-python"))
    ephemeral = short_tmp / "temp-00000000deadbeef.sock"
    monkeypatch.setattr(client_mod, "get_random_sockpath", lambda: ephemeral)

    with pytest.raises(OSError) as ei:
        asyncio.run(connect_to_service(svc, None, base, 2.0))
    assert not isinstance(ei.value, LivenessTimeoutError)
    assert isinstance(ei.value, FileNotFoundError)
    assert not ephemeral.exists()
    assert launched_pids(launch_log) == []


@pytest.mark.skipif(shutil.which("env") is None, reason="requires env(1)")
def test_executor_prefix_runs_the_command(echo_env: Tuple[Path, Path]) -> None:
    base, launch_log = echo_env
    svc = echo_command_service(base, launch_log)

    reified = reify(svc, base, [shutil.which("env") or "env"])
    conn = asyncio.run(reified.connect(LIVENESS_TIMEOUT_SEC))
    with conn:
        assert echo_roundtrip(conn) == b"ping"
    assert len(launched_pids(launch_log)) == 1


def test_bundle_member_connects_and_service_removes_socket_on_sigterm(echo_env: Tuple[Path, Path]) -> None:
    base, launch_log = echo_env

    class _Bundle(ServiceBundle):
        echo = echo_command_service(base, launch_log)

    bundle = _Bundle.new(base)
    with pytest.raises(OSError):
        asyncio.run(bundle.echo.connect_to_running())

    conn = asyncio.run(bundle.echo.connect(LIVENESS_TIMEOUT_SEC))
    with conn:
        assert echo_roundtrip(conn) == b"ping"

    running = asyncio.run(bundle.echo.connect_to_running())
    running.close()

    terminate_launched(launch_log, bundle.echo.socket_path)
    assert not bundle.echo.socket_path.exists()
