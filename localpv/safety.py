"""Guards that must pass before a device is formatted."""

from __future__ import annotations

from .errors import SafetyAbortError
from .executil import run_root
from .fstab import references_device
from .model import AgentContext, DeviceTarget


def signature_probe(ctx: AgentContext, device_path: str) -> str:
    """Return what ``wipefs`` would erase from ``device_path``.

    ``--no-act`` makes this a read-only listing; any output means a
    filesystem, partition table or RAID signature is present.
    """

    r = run_root(ctx, ["wipefs", "--all", "--no-act", device_path], timeout=ctx.timeouts.probe)
    return (r.out or "").strip()


def guard_unused(ctx: AgentContext, target: DeviceTarget, fstab_content: str) -> None:
    """Raise :class:`SafetyAbortError` unless ``target`` looks blank and unregistered."""

    signatures = signature_probe(ctx, target.device_path)
    if signatures:
        raise SafetyAbortError(
            f"{target.device_path} possibly contains an existing file system",
            device=target.device_path,
            detail=signatures,
        )
    if references_device(fstab_content, target.device_path):
        raise SafetyAbortError(
            f"{target.device_path} found inside {ctx.fstab_path}",
            device=target.device_path,
            detail=fstab_content,
        )
