from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Union

from .executil import Elevation, Tracer
from .paths import DEFAULT_BY_ID_ROOT, DEFAULT_FSTAB_PATH, device_path, mount_path

MOUNT_FSTYPE = "ext4"
MOUNT_OPTIONS = "defaults,noatime,discard,nofail"


class MarkerKind(str, enum.Enum):
    ANNOTATION = "annotation"
    LABEL = "label"

    @property
    def metadata_field(self) -> str:
        """Key of the node metadata map holding markers of this kind."""
        return "annotations" if self is MarkerKind.ANNOTATION else "labels"

    @property
    def kubectl_verb(self) -> str:
        return "annotate" if self is MarkerKind.ANNOTATION else "label"


class DeviceState(str, enum.Enum):
    UNCHECKED = "unchecked"
    MOUNTED_ALREADY = "mounted_already"
    NEEDS_PROVISION = "needs_provision"
    SAFETY_CHECKED = "safety_checked"
    FORMATTED = "formatted"
    REGISTERED = "registered"
    DIR_PREPARED = "dir_prepared"
    MOUNTED = "mounted"


TERMINAL_STATES = frozenset({DeviceState.MOUNTED_ALREADY, DeviceState.MOUNTED})


@dataclass
class Timeouts:
    probe: float = 30.0
    format: float = 600.0
    mutate: float = 60.0
    kubectl: float = 30.0


@dataclass
class AgentContext:
    """Everything one invocation needs, built once by the CLI."""

    marker_key: str
    root_mount_path: str
    marker_kind: MarkerKind = MarkerKind.ANNOTATION
    node_name_env_var: str = "NODE_NAME"
    by_id_root: str = DEFAULT_BY_ID_ROOT
    fstab_path: str = DEFAULT_FSTAB_PATH
    trigger_label: Optional[str] = None
    kubectl: str = "kubectl"
    timeouts: Timeouts = field(default_factory=Timeouts)
    elevation: Elevation = field(default_factory=Elevation)
    dry_run: bool = False
    tracer: Tracer = field(default_factory=Tracer)

    def target(self, device_id: str) -> "DeviceTarget":
        return DeviceTarget(
            device_id=device_id,
            device_path=device_path(self.by_id_root, device_id),
            mount_path=mount_path(self.root_mount_path, device_id),
        )


@dataclass(frozen=True)
class DeviceTarget:
    device_id: str
    device_path: str
    mount_path: str


@dataclass(frozen=True)
class MountRecord:
    device_path: str
    mount_path: str
    fstype: str = MOUNT_FSTYPE
    options: str = MOUNT_OPTIONS
    dump: int = 0
    passno: int = 0

    def line(self) -> str:
        return f"{self.device_path}  {self.mount_path}  {self.fstype}  {self.options}  {self.dump} {self.passno}"


@dataclass(frozen=True)
class Processed:
    target: DeviceTarget
    state: DeviceState


@dataclass(frozen=True)
class Abort:
    target: DeviceTarget
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class Fatal:
    target: DeviceTarget
    state: DeviceState
    error: Exception


Outcome = Union[Processed, Abort, Fatal]


@dataclass
class BatchReport:
    node_name: str
    device_ids: list[str]
    outcomes: list = field(default_factory=list)
    marker_cleared: bool = False

    @property
    def stopped_by(self) -> Optional[Outcome]:
        """The ``Abort``/``Fatal`` outcome that ended the batch, if any."""
        for outcome in self.outcomes:
            if not isinstance(outcome, Processed):
                return outcome
        return None

    @property
    def status(self) -> str:
        stop = self.stopped_by
        if stop is None:
            return "ok"
        return "abort" if isinstance(stop, Abort) else "fatal"
