from __future__ import annotations

from .devices import process_device
from .marker import clear_marker, read_pending_device_ids
from .model import AgentContext, BatchReport, Processed


def run_batch(ctx: AgentContext) -> BatchReport:
    """Provision every pending device on this node, in marker order.

    Stops at the first device that aborts or fails; the marker is only
    cleared when every device ended up mounted.
    """

    node_name, device_ids = read_pending_device_ids(ctx)
    report = BatchReport(node_name=node_name, device_ids=device_ids)
    tracer = ctx.tracer

    if not device_ids:
        tracer.info("batch.empty", node=node_name, key=ctx.marker_key)
    else:
        tracer.info("batch.start", node=node_name, count=len(device_ids), devices=", ".join(device_ids))

    for device_id in device_ids:
        outcome = process_device(ctx, device_id)
        report.outcomes.append(outcome)
        if not isinstance(outcome, Processed):
            tracer.error(
                "batch.stopped",
                node=node_name,
                device_id=device_id,
                status=report.status,
                remaining=device_ids[len(report.outcomes):],
            )
            return report

    report.marker_cleared = clear_marker(ctx, node_name)
    tracer.info("batch.done", node=node_name, processed=len(report.outcomes))
    return report
