"""
Services Runtime CLI（paths/status/start）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON
- 日志走 stderr（`--log-level`），不污染 stdout
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from services_runtime.bootstrap import ResolvedServicesConfig, build_service_bundle, resolve_effective_config
from services_runtime.core.errors import FrameworkError, FrameworkIssue, LivenessTimeoutError
from services_runtime.runtime.reified import ReifiedService, ServiceBundle

EXIT_OK = 0
EXIT_CONFIG_INVALID = 10
EXIT_SERVICE_NOT_FOUND = 11
EXIT_ACTIVATION_FAILED = 12
EXIT_LIVENESS_TIMEOUT = 13


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _issues_to_jsonable(issues: List[FrameworkIssue]) -> List[Dict[str, Any]]:
    return [{"code": it.code, "message": it.message, "details": dict(it.details)} for it in issues]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, str(level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_bundle(args: argparse.Namespace) -> tuple[Optional[ResolvedServicesConfig], Optional[ServiceBundle], List[FrameworkIssue]]:
    """
    解析配置并构造 ServiceBundle（fail-open：失败时返回 issues）。

    返回：
    - (resolved, bundle, issues)：失败时 resolved/bundle 为 None，issues 至少包含一条
    """

    config_paths = [Path(p) for p in args.config] if args.config else None
    try:
        resolved = resolve_effective_config(config_paths=config_paths)
    except ValidationError as exc:
        return None, None, [
            FrameworkIssue(code="CLI_CONFIG_INVALID", message="Config is invalid.", details={"reason": str(exc)})
        ]
    except (ValueError, OSError) as exc:
        return None, None, [
            FrameworkIssue(code="CLI_CONFIG_LOAD_FAILED", message="Config load failed.", details={"reason": str(exc)})
        ]

    try:
        bundle = build_service_bundle(resolved, create_base_dir=bool(getattr(args, "create_base_dir", False)))
    except FrameworkError as exc:
        return None, None, [exc.to_issue()]
    except (ValueError, TypeError) as exc:
        return None, None, [
            FrameworkIssue(code="CLI_CONFIG_INVALID", message="Service bundle is invalid.", details={"reason": str(exc)})
        ]
    return resolved, bundle, []


def _fail_config(issues: List[FrameworkIssue], *, pretty: bool) -> int:
    _dump_json_to_stdout({"ok": False, "issues": _issues_to_jsonable(issues)}, pretty=pretty)
    return EXIT_CONFIG_INVALID


def _close_connection(conn: Any) -> None:
    close = getattr(conn, "close", None)
    if callable(close):
        with contextlib.suppress(OSError):
            close()


async def _probe_running(reified: ReifiedService[Any]) -> Dict[str, Any]:
    try:
        conn = await reified.connect_to_running()
    except OSError as exc:
        return {"running": False, "reason": str(exc)}
    _close_connection(conn)
    return {"running": True}


def _handle_paths(args: argparse.Namespace) -> int:
    resolved, bundle, issues = _load_bundle(args)
    if resolved is None or bundle is None:
        return _fail_config(issues, pretty=args.pretty)
    out = {
        "ok": True,
        "base_context_directory": str(bundle.base_context_directory),
        "executor_prefix": list(bundle.executor_prefix or ()),
        "overlay_paths": list(resolved.overlay_paths),
        "sources": dict(resolved.sources),
        "services": {name: {"socket_path": str(bundle[name].socket_path)} for name in bundle.names()},
    }
    _dump_json_to_stdout(out, pretty=args.pretty)
    return EXIT_OK


def _handle_status(args: argparse.Namespace) -> int:
    _, bundle, issues = _load_bundle(args)
    if bundle is None:
        return _fail_config(issues, pretty=args.pretty)

    async def _collect() -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for name in bundle.names():
            item = await _probe_running(bundle[name])
            item["socket_path"] = str(bundle[name].socket_path)
            results[name] = item
        return results

    services = asyncio.run(_collect())
    _dump_json_to_stdout({"ok": True, "services": services}, pretty=args.pretty)
    return EXIT_OK


def _handle_start(args: argparse.Namespace) -> int:
    resolved, bundle, issues = _load_bundle(args)
    if resolved is None or bundle is None:
        return _fail_config(issues, pretty=args.pretty)

    name = str(args.name)
    if name not in bundle:
        _dump_json_to_stdout(
            {
                "ok": False,
                "error_kind": "not_found",
                "error": f"unknown service: {name}",
                "services": bundle.names(),
            },
            pretty=args.pretty,
        )
        return EXIT_SERVICE_NOT_FOUND

    timeout_sec = resolved.liveness_timeout_sec
    if args.timeout_ms is not None:
        timeout_sec = int(args.timeout_ms) / 1000.0

    reified = bundle[name]
    try:
        conn = asyncio.run(reified.connect(timeout_sec))
    except LivenessTimeoutError as exc:
        _dump_json_to_stdout(
            {"ok": False, "error_kind": "liveness_timeout", "error": str(exc), "timeout_sec": exc.timeout_sec},
            pretty=args.pretty,
        )
        return EXIT_LIVENESS_TIMEOUT
    except OSError as exc:
        _dump_json_to_stdout(
            {"ok": False, "error_kind": "activation_failed", "error": str(exc)},
            pretty=args.pretty,
        )
        return EXIT_ACTIVATION_FAILED
    except Exception as exc:
        # wrap_connection / after_liveness 的任意异常：stdout 仍须是 JSON
        _dump_json_to_stdout(
            {"ok": False, "error_kind": "activation_failed", "error": f"{type(exc).__name__}: {exc}"},
            pretty=args.pretty,
        )
        return EXIT_ACTIVATION_FAILED

    _close_connection(conn)
    _dump_json_to_stdout(
        {"ok": True, "service": name, "socket_path": str(reified.socket_path)},
        pretty=args.pretty,
    )
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="services-runtime",
        description="Services Runtime CLI（paths/status/start）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
        p.add_argument("--log-level", default="WARNING", help="Log level for stderr logging (default: WARNING).")

    paths = root_sub.add_parser("paths", help="Show base context directory and socket paths")
    _add_common_flags(paths)

    status = root_sub.add_parser("status", help="Check which declared services are running")
    _add_common_flags(status)

    start = root_sub.add_parser("start", help="Connect to a service, starting it on demand")
    _add_common_flags(start)
    start.add_argument("name", help="Declared service name")
    start.add_argument("--timeout-ms", type=int, default=None, help="Liveness timeout override (ms).")
    start.set_defaults(create_base_dir=True)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    _configure_logging(args.log_level)

    if args.command == "paths":
        return _handle_paths(args)
    if args.command == "status":
        return _handle_status(args)
    if args.command == "start":
        return _handle_start(args)
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
