"""Subprocess wrapper with root elevation, namespace entry and JSONL tracing."""

from __future__ import annotations

import datetime as _dt
import json
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import IO, Sequence

from .errors import CommandFailureError, CommandTimeoutError
from .paths import log_dirs

LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_FILENAME = "localpv.jsonl"

HOST_NAMESPACES_PREFIX = ("nsenter", "--target", "1", "--mount", "--uts", "--net", "--ipc", "--")


class Tracer:
    """Structured event log for one agent invocation.

    Every event is appended as a JSON line to ``localpv.jsonl`` in the first
    writable directory of ``dirs``.  Events at ``echo_level`` and above are
    also written to ``stream`` as ``[LEVEL] event key=value`` so they show up
    in the pod log.  Write failures are ignored; tracing must never be the
    reason a provisioning run stops.
    """

    def __init__(
        self,
        dirs: Sequence[str] | None = None,
        level: str | None = None,
        stream: IO[str] | None = None,
        echo_level: str = "INFO",
    ) -> None:
        self.dirs = list(dirs) if dirs is not None else log_dirs()
        self.level = (level or os.environ.get("LOCALPV_LOG_LEVEL", "INFO")).upper()
        self.stream = stream if stream is not None else sys.stderr
        self.echo_level = echo_level.upper()
        self._path: str | None = None
        self._resolved = False

    @property
    def path(self) -> str | None:
        if self._resolved:
            return self._path
        self._resolved = True
        for d in self.dirs:
            try:
                os.makedirs(d, exist_ok=True)
            except OSError:
                continue
            self._path = os.path.join(d, LOG_FILENAME)
            break
        return self._path

    def _write(self, rec: dict) -> None:
        path = self.path
        if not path:
            return
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(rec, default=str) + "\n")
        except OSError:
            pass

    def _echo(self, level: str, event: str, fields: dict) -> None:
        parts = [f"[{level}]", event]
        for key, value in fields.items():
            if value is None or value == "":
                continue
            text = value if isinstance(value, str) else json.dumps(value, default=str)
            parts.append(f"{key}={text}")
        try:
            print(" ".join(parts), file=self.stream, flush=True)
        except (OSError, ValueError):
            pass

    def log(self, level: str, event: str, **fields) -> None:
        level = level.upper()
        lvl = LEVELS.get(level, 100)
        if lvl < LEVELS.get(self.level, 100):
            return
        ts = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
        rec = {"ts": ts, "level": level, "event": event}
        rec.update(fields)
        self._write(rec)
        if lvl >= LEVELS.get(self.echo_level, 100):
            self._echo(level, event, fields)

    def trace(self, event: str, **fields) -> None:
        self.log("TRACE", event, **fields)

    def info(self, event: str, **fields) -> None:
        self.log("INFO", event, **fields)

    def warn(self, event: str, **fields) -> None:
        self.log("WARN", event, **fields)

    def error(self, event: str, **fields) -> None:
        self.log("ERROR", event, **fields)


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float = 60.0,
    env: dict | None = None,
    stdin: str | None = None,
    capture: bool = True,
    tracer: Tracer | None = None,
) -> Result:
    """Run ``cmd`` and wait for it, bounded by ``timeout`` seconds.

    With ``capture`` the child's stdout/stderr are collected into the
    returned :class:`Result`; otherwise the child inherits our own streams
    and ``out``/``err`` are empty.  ``stdin`` is fed to the child as text.
    """

    argv = list(cmd)
    if tracer:
        tracer.trace("exec.start", cmd=argv, capture=capture, timeout=timeout, dry_run=dry_run)
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in argv)
        if tracer:
            tracer.info("exec.dry_run", cmd=" ".join(shlex.quote(c) for c in argv))
        return Result(0, text, "", 0.0)

    kwargs: dict = {"text": True, "timeout": timeout, "env": (env or os.environ).copy()}
    if stdin is not None:
        kwargs["input"] = stdin
    if capture:
        kwargs["capture_output"] = True
    started = time.time()
    try:
        proc = subprocess.run(argv, **kwargs)
    except subprocess.TimeoutExpired as exc:
        if tracer:
            tracer.error("exec.timeout", cmd=argv, timeout=timeout)
        raise CommandTimeoutError(argv, timeout) from exc
    except OSError as exc:
        # missing binary or not executable; same exit status a shell reports
        if tracer:
            tracer.error("exec.spawn_failed", cmd=argv, error=str(exc))
        raise CommandFailureError(argv, 127, "", str(exc)) from exc
    dur = time.time() - started
    out = (proc.stdout or "") if capture else ""
    err = (proc.stderr or "") if capture else ""
    if tracer:
        tracer.trace("exec.done", cmd=argv, rc=proc.returncode, dur=dur, out=out, err=err)
    if check and proc.returncode != 0:
        raise CommandFailureError(argv, proc.returncode, out, err)
    return Result(proc.returncode, out, err, dur)


def _default_root_prefix() -> tuple[str, ...]:
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() == 0:
        return ()
    return ("sudo", "-n")


@dataclass(frozen=True)
class Elevation:
    """How to obtain root and how to enter the host's initial namespaces."""

    root_prefix: tuple[str, ...] = field(default_factory=_default_root_prefix)
    host_prefix: tuple[str, ...] = HOST_NAMESPACES_PREFIX

    def wrap(self, cmd: Sequence[str], host_namespaces: bool = False) -> list[str]:
        argv = list(cmd)
        if host_namespaces:
            argv = [*self.host_prefix, *argv]
        return [*self.root_prefix, *argv]


def run_root(
    ctx,
    cmd: Sequence[str],
    timeout: float,
    capture: bool = True,
    stdin: str | None = None,
    check: bool = True,
    host_namespaces: bool = False,
    mutating: bool = False,
) -> Result:
    """Run ``cmd`` as root on behalf of ``ctx``.

    ``host_namespaces`` enters the mount, UTS, network and IPC namespaces of
    PID 1 first.  Only ``mutating`` commands are skipped in dry-run mode;
    probes always execute so later decisions see real state.
    """

    argv = ctx.elevation.wrap(cmd, host_namespaces=host_namespaces)
    return run(
        argv,
        check=check,
        dry_run=ctx.dry_run and mutating,
        timeout=timeout,
        stdin=stdin,
        capture=capture,
        tracer=ctx.tracer,
    )
