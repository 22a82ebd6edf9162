"""Per-device provisioning: probe, guard, format, register, prepare, mount."""

from __future__ import annotations

from .errors import LocalPvError, SafetyAbortError
from .executil import run_root
from .fstab import read_fstab, register
from .model import (
    Abort,
    AgentContext,
    DeviceState,
    DeviceTarget,
    Fatal,
    MountRecord,
    Outcome,
    Processed,
)
from .safety import guard_unused


def is_mounted(ctx: AgentContext, target: DeviceTarget) -> bool:
    r = run_root(ctx, ["mountpoint", "-q", target.mount_path], timeout=ctx.timeouts.probe, check=False)
    return r.rc == 0


def format_device(ctx: AgentContext, target: DeviceTarget) -> None:
    run_root(
        ctx,
        ["mkfs.ext4", target.device_path],
        timeout=ctx.timeouts.format,
        capture=False,
        mutating=True,
    )


def prepare_mount_dir(ctx: AgentContext, target: DeviceTarget) -> None:
    # The immutable bit keeps anything from writing into the bare directory
    # if the mount is ever missing; it does not affect the mounted fs.
    run_root(ctx, ["mkdir", "-p", target.mount_path], timeout=ctx.timeouts.mutate, capture=False, mutating=True)
    run_root(ctx, ["chattr", "+i", target.mount_path], timeout=ctx.timeouts.mutate, capture=False, mutating=True)


def mount_device(ctx: AgentContext, target: DeviceTarget) -> None:
    """Mount via the fstab record, from inside the host's namespaces.

    A mount made in the agent's own mount namespace would be invisible to
    the kubelet and to other pods.
    """

    run_root(
        ctx,
        ["mount", f"--source={target.device_path}"],
        timeout=ctx.timeouts.mutate,
        capture=False,
        host_namespaces=True,
        mutating=True,
    )


def process_device(ctx: AgentContext, device_id: str) -> Outcome:
    target = ctx.target(device_id)
    tracer = ctx.tracer
    state = DeviceState.UNCHECKED
    try:
        if is_mounted(ctx, target):
            tracer.info("devices.already_mounted", device_id=device_id, mount_path=target.mount_path)
            return Processed(target, DeviceState.MOUNTED_ALREADY)
        state = DeviceState.NEEDS_PROVISION
        tracer.info("devices.not_mounted", device_id=device_id, mount_path=target.mount_path)

        tracer.info("devices.safety_check", device_path=target.device_path, fstab=ctx.fstab_path)
        fstab_content = read_fstab(ctx)
        try:
            guard_unused(ctx, target, fstab_content)
        except SafetyAbortError as exc:
            tracer.error("devices.abort", device_id=device_id, reason=str(exc), output=exc.detail)
            return Abort(target, str(exc), exc.detail)
        state = DeviceState.SAFETY_CHECKED

        tracer.info("devices.format", device_path=target.device_path)
        format_device(ctx, target)
        state = DeviceState.FORMATTED

        record = MountRecord(target.device_path, target.mount_path)
        tracer.info("devices.register", device_path=target.device_path, fstab=ctx.fstab_path)
        register(ctx, fstab_content, record)
        state = DeviceState.REGISTERED

        tracer.info("devices.prepare_dir", mount_path=target.mount_path)
        prepare_mount_dir(ctx, target)
        state = DeviceState.DIR_PREPARED

        tracer.info("devices.mount", device_path=target.device_path, mount_path=target.mount_path)
        mount_device(ctx, target)
        state = DeviceState.MOUNTED
    except LocalPvError as exc:
        tracer.error("devices.fatal", device_id=device_id, state=state.value, error=str(exc))
        return Fatal(target, state, exc)
    return Processed(target, state)
