"""CLI entrypoint for the local PV preparation agent."""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Dict, Optional

from .batch import run_batch
from .errors import (
    CommandFailureError,
    CommandTimeoutError,
    ConfigurationError,
    ValidationError,
)
from .executil import Elevation, Tracer
from .model import Abort, AgentContext, Fatal, MarkerKind, Timeouts
from .paths import DEFAULT_BY_ID_ROOT, DEFAULT_FSTAB_PATH, log_dirs

RESULT_CODES: Dict[str, int] = {
    "PREPARE_OK": 0,
    "FAIL_SAFETY_ABORT": 1,
    "FAIL_CONFIG": 2,
    "FAIL_VALIDATION": 2,
    "FAIL_COMMAND": 4,
    "FAIL_TIMEOUT": 5,
    "FAIL_UNHANDLED": 12,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="localpv-prepare", add_help=True)
    parser.add_argument("--node-name-env-var", default="NODE_NAME")
    parser.add_argument("--marker-key", required=True)
    parser.add_argument(
        "--marker-kind",
        choices=[k.value for k in MarkerKind],
        default=MarkerKind.ANNOTATION.value,
    )
    parser.add_argument("--root-mount-path", required=True)
    parser.add_argument("--by-id-root", default=DEFAULT_BY_ID_ROOT)
    parser.add_argument("--fstab-path", default=DEFAULT_FSTAB_PATH)
    parser.add_argument("--trigger-label", default=None)
    parser.add_argument("--kubectl", default="kubectl")
    parser.add_argument("--probe-timeout", type=float, default=30.0)
    parser.add_argument("--format-timeout", type=float, default=600.0)
    parser.add_argument("--mutate-timeout", type=float, default=60.0)
    parser.add_argument("--kubectl-timeout", type=float, default=30.0)
    parser.add_argument("--sudo", dest="sudo", action="store_true", default=None)
    parser.add_argument("--no-sudo", dest="sudo", action="store_false")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--log-dir", default=None)
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    return parser


def build_context(args: argparse.Namespace, tracer: Optional[Tracer] = None) -> AgentContext:
    for name in ("probe_timeout", "format_timeout", "mutate_timeout", "kubectl_timeout"):
        if getattr(args, name) <= 0:
            raise ConfigurationError(f"--{name.replace('_', '-')} must be positive")
    if args.sudo is None:
        elevation = Elevation()
    else:
        elevation = Elevation(root_prefix=("sudo", "-n") if args.sudo else ())
    return AgentContext(
        marker_key=args.marker_key,
        root_mount_path=args.root_mount_path,
        marker_kind=MarkerKind(args.marker_kind),
        node_name_env_var=args.node_name_env_var,
        by_id_root=args.by_id_root,
        fstab_path=args.fstab_path,
        trigger_label=args.trigger_label or None,
        kubectl=args.kubectl,
        timeouts=Timeouts(
            probe=args.probe_timeout,
            format=args.format_timeout,
            mutate=args.mutate_timeout,
            kubectl=args.kubectl_timeout,
        ),
        elevation=elevation,
        dry_run=args.dry_run,
        tracer=tracer or Tracer(dirs=log_dirs(args.log_dir), level=args.log_level),
    )


def _emit_result(
        kind: str,
        tracer: Optional[Tracer],
        extra: Optional[Dict[str, Any]] = None,
        json_output: bool = True,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    if tracer:
        payload.setdefault("log_path", tracer.path)
        level = "INFO" if RESULT_CODES.get(kind, 1) == 0 else "ERROR"
        tracer.log(level, "cli.result", **payload)
    if json_output:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    raise SystemExit(RESULT_CODES.get(kind, 1))


def _report_extra(report) -> Dict[str, Any]:
    extra: Dict[str, Any] = {
        "node": report.node_name,
        "devices": report.device_ids,
        "states": [
            {"device_id": o.target.device_id, "state": o.state.value if hasattr(o, "state") else "aborted"}
            for o in report.outcomes
        ],
        "marker_cleared": report.marker_cleared,
    }
    stop = report.stopped_by
    if isinstance(stop, Abort):
        extra.update(device=stop.target.device_path, reason=stop.reason, why=stop.detail)
    elif isinstance(stop, Fatal):
        extra.update(device=stop.target.device_path, reason=str(stop.error), phase=stop.state.value)
    return extra


def _fatal_kind(error: Exception) -> str:
    if isinstance(error, CommandTimeoutError):
        return "FAIL_TIMEOUT"
    if isinstance(error, CommandFailureError):
        return "FAIL_COMMAND"
    return "FAIL_UNHANDLED"


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    json_output = bool(args.json)
    tracer = Tracer(dirs=log_dirs(args.log_dir), level=args.log_level)

    try:
        ctx = build_context(args, tracer=tracer)
    except ConfigurationError as exc:
        _emit_result("FAIL_CONFIG", tracer, {"reason": str(exc)}, json_output)

    tracer.trace(
        "cli.args",
        marker_key=ctx.marker_key,
        marker_kind=ctx.marker_kind.value,
        root_mount_path=ctx.root_mount_path,
        fstab_path=ctx.fstab_path,
        dry_run=ctx.dry_run,
        elevation=list(ctx.elevation.root_prefix),
    )

    try:
        report = run_batch(ctx)
    except ConfigurationError as exc:
        _emit_result("FAIL_CONFIG", tracer, {"reason": str(exc)}, json_output)
    except ValidationError as exc:
        _emit_result("FAIL_VALIDATION", tracer, {"reason": str(exc)}, json_output)
    except CommandTimeoutError as exc:
        _emit_result("FAIL_TIMEOUT", tracer, {"reason": str(exc), "cmd": exc.cmd}, json_output)
    except CommandFailureError as exc:
        _emit_result(
            "FAIL_COMMAND",
            tracer,
            {"reason": str(exc), "cmd": exc.cmd, "rc": exc.rc},
            json_output,
        )

    extra = _report_extra(report)
    stop = report.stopped_by
    if stop is None:
        _emit_result("PREPARE_OK", tracer, extra, json_output)
    if isinstance(stop, Abort):
        _emit_result("FAIL_SAFETY_ABORT", tracer, extra, json_output)
    _emit_result(_fatal_kind(stop.error), tracer, extra, json_output)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        print(f"[DIAG] Unhandled error: {exc!r}", file=sys.stderr)
        _emit_result("FAIL_UNHANDLED", None, {"reason": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
