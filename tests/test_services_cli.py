from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict

import pytest

from service_support import ECHO_SCRIPT, SRC_DIR, launched_pids, terminate_launched
from services_runtime.cli.main import main
from services_runtime.runtime.reified import ReifiedService


def _run(capsys, argv) -> tuple[int, Dict[str, Any]]:  # type: ignore[no-untyped-def]
    code = main(argv)
    out = capsys.readouterr().out
    return code, json.loads(out)


@pytest.fixture
def cli_env(short_tmp: Path, monkeypatch):  # type: ignore[no-untyped-def]
    base = short_tmp / "ctx"
    monkeypatch.setenv("SERVICES_RUNTIME_BASE_DIR", str(base))
    monkeypatch.delenv("SERVICES_RUNTIME_CONFIG_PATHS", raising=False)
    monkeypatch.delenv("SERVICES_RUNTIME_EXECUTOR_PREFIX", raising=False)
    return short_tmp, base


def _echo_overlay(root: Path, base: Path, *, command: str = "") -> Path:
    launch_log = root / "launches.log"
    cfg = {
        "liveness_timeout_ms": 15000,
        "services": {
            "echo": {
                "command": command or sys.executable,
                "socket_name": "echo.sock",
                "pre_args": [
                    str(ECHO_SCRIPT),
                    "--base-dir",
                    str(base),
                    "--socket-name",
                    "echo.sock",
                    "--launch-log",
                    str(launch_log),
                ],
                "liveness_pre_args": ["--liveness"],
                "env": {"PYTHONPATH": str(SRC_DIR)},
            }
        },
    }
    p = root / "services.yaml"
    # JSON 是 YAML 的子集
    p.write_text(json.dumps(cfg), encoding="utf-8")
    return p


def test_paths_reports_base_dir_and_sockets(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, base = cli_env
    ov = _echo_overlay(root, base)
    code, out = _run(capsys, ["paths", "--config", str(ov)])
    assert code == 0
    assert out["ok"] is True
    assert out["base_context_directory"] == str(base.resolve())
    assert out["sources"]["base_context_directory"] == "env:SERVICES_RUNTIME_BASE_DIR"
    assert out["services"]["echo"]["socket_path"] == str(base.resolve() / "echo.sock")
    assert out["overlay_paths"] == [str(ov.resolve())]
    # paths 不创建目录
    assert not base.exists()


def test_status_reports_not_running(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, base = cli_env
    code, out = _run(capsys, ["status", "--config", str(_echo_overlay(root, base))])
    assert code == 0
    assert out["services"]["echo"]["running"] is False


def test_invalid_config_exits_10(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, _base = cli_env
    bad = root / "bad.yaml"
    bad.write_text("liveness_timeout: 1\n", encoding="utf-8")
    code, out = _run(capsys, ["paths", "--config", str(bad)])
    assert code == 10
    assert out["ok"] is False
    assert out["issues"][0]["code"] == "CLI_CONFIG_INVALID"


def test_missing_config_exits_10(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, _base = cli_env
    code, out = _run(capsys, ["status", "--config", str(root / "missing.yaml")])
    assert code == 10
    assert out["issues"][0]["code"] == "CLI_CONFIG_LOAD_FAILED"


def test_start_unknown_service_exits_11(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, base = cli_env
    code, out = _run(capsys, ["start", "nope", "--config", str(_echo_overlay(root, base))])
    assert code == 11
    assert out["error_kind"] == "not_found"
    assert out["services"] == ["echo"]


def test_start_with_missing_program_exits_12(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, base = cli_env
    ov = _echo_overlay(root, base, command=str(root / "no-such-python"))
    code, out = _run(capsys, ["start", "echo", "--config", str(ov)])
    assert code == 12
    assert out["error_kind"] == "activation_failed"


def test_start_with_silent_program_exits_13(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, base = cli_env
    silent = root / "silent.yaml"
    silent.write_text(
        json.dumps(
            {
                "services": {
                    "quiet": {
                        "command": sys.executable,
                        "socket_name": "quiet.sock",
                        "pre_args": ["-c", "import time; time.sleep(0.5)"],
                    }
                }
            }
        ),
        encoding="utf-8",
    )
    code, out = _run(capsys, ["start", "quiet", "--config", str(silent), "--timeout-ms", "100"])
    assert code == 13
    assert out["error_kind"] == "liveness_timeout"
    assert out["timeout_sec"] == 0.1


@pytest.mark.skipif(os.name == "nt", reason="Unix sockets only")
def test_start_then_status_reports_running(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    root, base = cli_env
    ov = _echo_overlay(root, base)
    launch_log = root / "launches.log"
    try:
        code, out = _run(capsys, ["start", "echo", "--config", str(ov)])
        assert code == 0, out
        assert out["ok"] is True
        assert base.is_dir()

        code, out = _run(capsys, ["status", "--config", str(ov), "--pretty"])
        assert code == 0
        assert out["services"]["echo"]["running"] is True

        # 已运行：再次 start 不会再启动新进程
        code, _ = _run(capsys, ["start", "echo", "--config", str(ov)])
        assert code == 0
        assert len(launched_pids(launch_log)) == 1
    finally:
        terminate_launched(launch_log, base / "echo.sock")


def test_argparse_error_exits_2(capsys) -> None:  # type: ignore[no-untyped-def]
    assert main(["start"]) == 2
    capsys.readouterr()


def test_service_names_matching_bundle_members_still_yield_json(cli_env, capsys) -> None:  # type: ignore[no-untyped-def]
    """服务名与 bundle 成员同名（names/executor_prefix）时 paths/status 仍输出 JSON。"""

    root, _base = cli_env
    ov = root / "clash.yaml"
    ov.write_text(
        json.dumps(
            {
                "services": {
                    "names": {"command": "a", "socket_name": "names.sock"},
                    "executor_prefix": {"command": "b", "socket_name": "prefix.sock"},
                }
            }
        ),
        encoding="utf-8",
    )
    code, out = _run(capsys, ["paths", "--config", str(ov)])
    assert code == 0
    assert sorted(out["services"]) == ["executor_prefix", "names"]

    code, out = _run(capsys, ["status", "--config", str(ov)])
    assert code == 0
    assert out["services"]["names"]["running"] is False


def test_start_maps_unexpected_connect_errors_to_json(cli_env, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    root, base = cli_env

    async def _bad_connect(self, liveness_timeout_sec):  # type: ignore[no-untyped-def]
        raise RuntimeError("post-liveness hook failed")

    monkeypatch.setattr(ReifiedService, "connect", _bad_connect)
    code, out = _run(capsys, ["start", "echo", "--config", str(_echo_overlay(root, base))])
    assert code == 12
    assert out["ok"] is False
    assert out["error_kind"] == "activation_failed"
    assert "RuntimeError" in out["error"]
