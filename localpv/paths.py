from __future__ import annotations

import os

DEFAULT_BY_ID_ROOT = "/dev/disk/by-id"
DEFAULT_FSTAB_PATH = "/etc/fstab"
_DEFAULT_LOG_DIRS = ("/var/log/localpv", "/tmp/localpv-logs")


def _join(root: str, name: str) -> str:
    # plain concatenation: an id starting with "/" must stay under root
    return root.rstrip("/") + "/" + name


def device_path(by_id_root: str, device_id: str) -> str:
    """Stable block device path for ``device_id`` (``/dev/disk/by-id/<id>``)."""

    return _join(by_id_root, device_id)


def mount_path(root_mount_path: str, device_id: str) -> str:
    return _join(root_mount_path, device_id)


def log_dirs(override: str | None = None) -> list[str]:
    """Candidate directories for the JSONL trace log, most preferred first.

    ``override`` comes from ``--log-dir``; ``LOCALPV_LOG_DIR`` is honoured
    next so the agent can be pointed at a hostPath volume without changing
    the job arguments.
    """

    dirs: list[str] = []
    for candidate in (override, os.environ.get("LOCALPV_LOG_DIR")):
        if candidate:
            dirs.append(os.path.expanduser(candidate))
    dirs.extend(_DEFAULT_LOG_DIRS)
    return dirs
