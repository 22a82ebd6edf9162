"""Read, check and extend the host mount table."""

from __future__ import annotations

from .executil import run_root
from .model import AgentContext, MountRecord


def read_fstab(ctx: AgentContext) -> str:
    r = run_root(ctx, ["cat", ctx.fstab_path], timeout=ctx.timeouts.probe)
    return r.out or ""


def references_device(content: str, device_path: str) -> bool:
    # Plain substring match: a commented-out or differently spaced entry for
    # the same device must still block provisioning.
    return device_path in content


def with_record(content: str, record: MountRecord) -> str:
    """Return ``content`` with ``record`` appended as its final line."""

    if content and not content.endswith("\n"):
        content += "\n"
    return content + record.line() + "\n"


def register(ctx: AgentContext, content: str, record: MountRecord) -> str:
    """Persist ``content`` plus ``record`` and return what was written.

    ``content`` must be the table as read and checked by
    :func:`localpv.safety.guard_unused`; the whole file is rewritten in one
    ``tee`` invocation.
    """

    data = with_record(content, record)
    run_root(
        ctx,
        ["tee", ctx.fstab_path],
        timeout=ctx.timeouts.mutate,
        stdin=data,
        mutating=True,
    )
    ctx.tracer.trace("fstab.register", path=ctx.fstab_path, line=record.line())
    return data
