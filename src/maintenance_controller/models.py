from __future__ import annotations

from dataclasses import dataclass, field

SCOPE_CLUSTER = "cluster"
SCOPE_NAMESPACE = "namespace"

STATE_PENDING = "Pending"
STATE_SCALING_UP = "ScalingUp"
STATE_SCALING_DOWN = "ScalingDown"
STATE_ENABLED = "Enabled"
STATE_DISABLED = "Disabled"

TRANSITIONAL_STATES = frozenset({STATE_SCALING_UP, STATE_SCALING_DOWN})

KIND_DEPLOYMENT = "Deployment"
KIND_STATEFULSET = "StatefulSet"
WORKLOAD_KINDS = (KIND_DEPLOYMENT, KIND_STATEFULSET)


@dataclass(frozen=True, order=True)
class WorkloadRef:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True, order=True)
class DeclarationRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class VolumeClaim:
    namespace: str
    name: str
    storage_class: str | None


@dataclass(frozen=True)
class Workload:
    ref: WorkloadRef
    replicas: int
    observed_replicas: int = 0
    claim_names: tuple[str, ...] = ()
    claim_templates: tuple[str, ...] = ()
    resource_version: str | None = None
    suspended_by: DeclarationRef | None = None
    suspended_replicas: int | None = None

    @property
    def namespace(self) -> str:
        return self.ref.namespace

    @property
    def name(self) -> str:
        return self.ref.name


@dataclass(frozen=True)
class InventorySnapshot:
    claims: tuple[VolumeClaim, ...] = ()
    workloads: tuple[Workload, ...] = ()

    def workload_index(self) -> dict[WorkloadRef, Workload]:
        return {workload.ref: workload for workload in self.workloads}


@dataclass(frozen=True, order=True)
class TargetConflict:
    workload: WorkloadRef
    declaration: DeclarationRef


@dataclass(frozen=True)
class MaintenanceDeclaration:
    """Desired maintenance intent plus the status last written by the reconciler.

    ``targets`` maps each workload this declaration suspended to the replica
    count it had before suspension. ``None`` means the count was never
    recorded; restores then fall back to one replica.
    """

    ref: DeclarationRef
    enable: bool
    scope: str = SCOPE_CLUSTER
    storage_class_names: tuple[str, ...] = ()
    state: str = STATE_PENDING
    targets: dict[WorkloadRef, int | None] = field(default_factory=dict)
    conflicts: tuple[TargetConflict, ...] = ()
    failed_updates: int = 0
    generation: int | None = None
    observed_generation: int | None = None
    resource_version: str | None = None


@dataclass(frozen=True)
class DeclarationStatus:
    state: str
    targets: dict[WorkloadRef, int | None]
    conflicts: tuple[TargetConflict, ...] = ()
    failed_updates: int = 0
    observed_generation: int | None = None


@dataclass(frozen=True)
class Decision:
    actions: dict[WorkloadRef, int]
    targets: dict[WorkloadRef, int | None]
    next_state: str


@dataclass(frozen=True)
class ReconcileOutcome:
    state: str | None = None
    retry: bool = False
    requeue_after: float | None = None
    cancelled: bool = False
    applied: tuple[WorkloadRef, ...] = ()
    failed: tuple[WorkloadRef, ...] = ()
    conflicts: tuple[TargetConflict, ...] = ()
    message: str = ""
