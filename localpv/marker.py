"""Read and clear the pending-devices marker on the node object."""

from __future__ import annotations

import json
import os
from typing import Any, Dict

from .errors import ConfigurationError, ValidationError
from .executil import run
from .model import AgentContext


def resolve_node_name(ctx: AgentContext) -> str:
    name = os.environ.get(ctx.node_name_env_var, "")
    if not name:
        raise ConfigurationError(f"{ctx.node_name_env_var} env variable is not set")
    return name


def _kubectl(ctx: AgentContext, args: list[str], capture: bool = True):
    return run(
        [ctx.kubectl, *args],
        check=True,
        dry_run=ctx.dry_run and not capture,
        timeout=ctx.timeouts.kubectl,
        capture=capture,
        tracer=ctx.tracer,
    )


def read_metadata(ctx: AgentContext, node_name: str) -> Dict[str, Any]:
    """Fetch the node's annotations or labels as a dict."""

    field = ctx.marker_kind.metadata_field
    r = _kubectl(ctx, ["get", f"node/{node_name}", f"-o=jsonpath={{.metadata.{field}}}"])
    text = (r.out or "").strip()
    # jsonpath prints nothing when the map is absent altogether
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"node/{node_name} {field} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError(
            f"node/{node_name} {field} should be an object, got {type(payload).__name__}"
        )
    return payload


def marker_value(metadata: Dict[str, Any], key: str) -> str:
    value = metadata.get(key)
    return value if isinstance(value, str) else ""


def parse_device_ids(value: str, tracer=None) -> list[str]:
    """Split a marker value into device ids, keeping order and duplicates.

    Empty segments are dropped: an empty id would map onto the by-id root
    and the mount root themselves.
    """

    if not value:
        return []
    ids = []
    for idx, token in enumerate(value.split(",")):
        if not token:
            if tracer:
                tracer.warn("marker.empty_segment", index=idx, value=value)
            continue
        ids.append(token)
    return ids


def read_pending_device_ids(ctx: AgentContext) -> tuple[str, list[str]]:
    node_name = resolve_node_name(ctx)
    metadata = read_metadata(ctx, node_name)
    value = marker_value(metadata, ctx.marker_key)
    ids = parse_device_ids(value, tracer=ctx.tracer)
    ctx.tracer.trace(
        "marker.read",
        node=node_name,
        kind=ctx.marker_kind.value,
        key=ctx.marker_key,
        raw=value,
        device_ids=ids,
    )
    return node_name, ids


def clear_marker(ctx: AgentContext, node_name: str) -> bool:
    """Remove the marker key, then the trigger label when one is configured.

    Returns False in dry-run mode, where no patch is sent.
    """

    kind = ctx.marker_kind
    ctx.tracer.info("marker.clear", node=node_name, kind=kind.value, key=ctx.marker_key)
    _kubectl(ctx, [kind.kubectl_verb, f"node/{node_name}", f"{ctx.marker_key}-"], capture=False)
    if ctx.trigger_label:
        ctx.tracer.info("marker.clear_trigger_label", node=node_name, label=ctx.trigger_label)
        _kubectl(ctx, ["label", f"node/{node_name}", f"{ctx.trigger_label}-"], capture=False)
    return not ctx.dry_run
