from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

READ_WRITE_ONCE = "ReadWriteOnce"
READ_WRITE_MANY = "ReadWriteMany"
READ_ONLY_MANY = "ReadOnlyMany"
ACCESS_MODES = frozenset({READ_WRITE_ONCE, READ_WRITE_MANY, READ_ONLY_MANY})
ACCESS_MODE_ALIASES = {
    "RWO": READ_WRITE_ONCE,
    "RWX": READ_WRITE_MANY,
    "ROX": READ_ONLY_MANY,
}

RECLAIM_RETAIN = "Retain"
RECLAIM_DELETE = "Delete"
RECLAIM_POLICIES = frozenset({RECLAIM_RETAIN, RECLAIM_DELETE})

PHASE_PENDING = "Pending"
PHASE_BOUND = "Bound"
PHASE_RELEASED = "Released"
PHASE_LOST = "Lost"

OUTCOME_BOUND = "bound"
OUTCOME_WAITING_FOR_CAPACITY = "waiting_for_capacity"
OUTCOME_LOST = "lost"

MOUNT_READY = "Ready"
MOUNT_RELEASED = "Released"
MOUNT_LOST = "Lost"

EVENT_BOUND = "bound"
EVENT_RELEASED = "released"
EVENT_LOST = "lost"
EVENT_MOUNTED = "mounted"
EVENT_UNMOUNTED = "unmounted"


@dataclass(frozen=True)
class Volume:
    name: str
    capacity_bytes: int
    access_modes: frozenset[str]
    storage_class: str | None = None
    reclaim_policy: str = RECLAIM_RETAIN
    mount_options: tuple[str, ...] = ()
    claim_name: str | None = None

    @property
    def is_bound(self) -> bool:
        return self.claim_name is not None


@dataclass(frozen=True)
class Claim:
    name: str
    requested_bytes: int
    access_modes: frozenset[str]
    storage_class: str | None = None
    phase: str = PHASE_PENDING
    volume_name: str | None = None
    sequence: int = 0


@dataclass(frozen=True)
class Binding:
    claim_name: str
    volume_name: str
    bound_at: str


@dataclass(frozen=True)
class BindOutcome:
    claim_name: str
    status: str
    volume_name: str | None = None

    @property
    def is_bound(self) -> bool:
        return self.status == OUTCOME_BOUND


@dataclass(frozen=True)
class MountHandle:
    handle_id: str
    workload: str
    claim_name: str
    path: str
    volume_name: str
    mount_options: tuple[str, ...] = ()
    issued_at: str = ""

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.workload, self.claim_name, self.path)


@dataclass(frozen=True)
class WorkloadMount:
    volume_ref: str
    path: str


@dataclass(frozen=True)
class WorkloadDescriptor:
    name: str
    mounts: tuple[WorkloadMount, ...] = ()


@dataclass(frozen=True)
class BindingEvent:
    event: str
    claim_name: str
    volume_name: str | None
    created_at: str
    workload: str | None = None
    path: str | None = None
    message: str = ""


@dataclass(frozen=True)
class StorageSnapshot:
    volumes: tuple[Volume, ...] = ()
    claims: tuple[Claim, ...] = ()
    bindings: tuple[Binding, ...] = ()
    mounts: tuple[MountHandle, ...] = ()
    pending_claims: tuple[str, ...] = ()


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()
