from __future__ import annotations

from typing import Any

from kubernetes import client

from .models import (
    KIND_DEPLOYMENT,
    KIND_STATEFULSET,
    SCOPE_CLUSTER,
    SCOPE_NAMESPACE,
    STATE_PENDING,
    DeclarationRef,
    DeclarationStatus,
    MaintenanceDeclaration,
    TargetConflict,
    VolumeClaim,
    Workload,
    WorkloadRef,
)

CRD_GROUP = "cluster.rcluff.com"
CRD_VERSION = "v1"
CRD_PLURAL = "maintenancemodes"
CRD_KIND = "MaintenanceMode"

MAINTENANCE_MODE_ANNOTATION = "maintenance-controller.rcluff.com/maintenance-mode"
ORIGINAL_REPLICAS_ANNOTATION = "maintenance-controller.rcluff.com/original-replicas"
DEFAULT_REPLICAS = 1


def declaration_from_object(obj: dict[str, Any]) -> MaintenanceDeclaration:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}

    return MaintenanceDeclaration(
        ref=DeclarationRef(namespace=metadata.get("namespace") or "", name=metadata.get("name") or ""),
        enable=bool(spec.get("enable", False)),
        scope=normalize_scope(spec.get("scope")),
        storage_class_names=tuple(name for name in spec.get("storageClassNames") or () if name),
        state=status.get("state") or STATE_PENDING,
        targets=_targets_from_status(status.get("targets") or []),
        conflicts=_conflicts_from_status(status.get("conflicts") or []),
        failed_updates=int(status.get("failedUpdates") or 0),
        generation=metadata.get("generation"),
        observed_generation=status.get("observedGeneration"),
        resource_version=metadata.get("resourceVersion"),
    )


def normalize_scope(value: str | None) -> str:
    if value and value.strip().lower() == SCOPE_NAMESPACE:
        return SCOPE_NAMESPACE
    return SCOPE_CLUSTER


def status_of(declaration: MaintenanceDeclaration) -> DeclarationStatus:
    return DeclarationStatus(
        state=declaration.state,
        targets=dict(declaration.targets),
        conflicts=declaration.conflicts,
        failed_updates=declaration.failed_updates,
        observed_generation=declaration.observed_generation,
    )


def status_to_object(status: DeclarationStatus) -> dict[str, Any]:
    return {
        "state": status.state,
        "targets": [
            {
                "kind": ref.kind,
                "namespace": ref.namespace,
                "name": ref.name,
                "replicas": replicas,
            }
            for ref, replicas in sorted(status.targets.items())
        ],
        "conflicts": [
            {
                "kind": conflict.workload.kind,
                "namespace": conflict.workload.namespace,
                "name": conflict.workload.name,
                "declaration": str(conflict.declaration),
            }
            for conflict in status.conflicts
        ],
        "failedUpdates": status.failed_updates,
        "observedGeneration": status.observed_generation,
    }


def claim_from_pvc(pvc: client.V1PersistentVolumeClaim) -> VolumeClaim:
    return VolumeClaim(
        namespace=pvc.metadata.namespace or "",
        name=pvc.metadata.name or "",
        storage_class=pvc.spec.storage_class_name if pvc.spec else None,
    )


def workload_from_object(kind: str, obj: client.V1Deployment | client.V1StatefulSet) -> Workload:
    metadata = obj.metadata
    spec = obj.spec
    replicas = spec.replicas if spec is not None and spec.replicas is not None else DEFAULT_REPLICAS
    observed = obj.status.replicas if obj.status is not None and obj.status.replicas else 0

    claim_names: list[str] = []
    pod_spec = spec.template.spec if spec is not None and spec.template is not None else None
    for volume in (pod_spec.volumes if pod_spec is not None else None) or []:
        source = volume.persistent_volume_claim
        if source and source.claim_name and source.claim_name not in claim_names:
            claim_names.append(source.claim_name)

    claim_templates: tuple[str, ...] = ()
    if kind == KIND_STATEFULSET and spec is not None:
        claim_templates = tuple(
            template.metadata.name
            for template in spec.volume_claim_templates or []
            if template.metadata is not None and template.metadata.name
        )

    annotations = metadata.annotations or {}
    return Workload(
        ref=WorkloadRef(kind=kind, namespace=metadata.namespace or "", name=metadata.name or ""),
        replicas=replicas,
        observed_replicas=observed,
        claim_names=tuple(claim_names),
        claim_templates=claim_templates,
        resource_version=metadata.resource_version,
        suspended_by=_parse_declaration_ref(annotations.get(MAINTENANCE_MODE_ANNOTATION)),
        suspended_replicas=_parse_replicas(annotations.get(ORIGINAL_REPLICAS_ANNOTATION)),
    )


def replica_patch(
    workload: Workload,
    replicas: int,
    *,
    owner: DeclarationRef | None,
    remembered_replicas: int | None = None,
) -> dict[str, Any]:
    """Build a conditional patch setting ``replicas`` on ``workload``.

    The ``resourceVersion`` precondition makes the API server reject the patch
    with 409 when the workload changed after it was read. With an ``owner`` the
    workload is stamped with the suspending declaration and its remembered
    replica count; a ``None`` owner removes both annotations.
    """
    if owner is not None:
        annotations = {
            MAINTENANCE_MODE_ANNOTATION: str(owner),
            ORIGINAL_REPLICAS_ANNOTATION: str(remembered_replicas) if remembered_replicas is not None else None,
        }
    else:
        annotations = {MAINTENANCE_MODE_ANNOTATION: None, ORIGINAL_REPLICAS_ANNOTATION: None}
    metadata: dict[str, Any] = {"annotations": annotations}
    if workload.resource_version:
        metadata["resourceVersion"] = workload.resource_version
    return {"metadata": metadata, "spec": {"replicas": replicas}}


def _parse_declaration_ref(value: str | None) -> DeclarationRef | None:
    if not value:
        return None
    namespace, separator, name = value.strip().partition("/")
    if not separator or not namespace or not name:
        return None
    return DeclarationRef(namespace=namespace, name=name)


def _parse_replicas(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        replicas = int(str(value).strip())
    except ValueError:
        return None
    return replicas if replicas > 0 else None


def _targets_from_status(entries: list[dict[str, Any]]) -> dict[WorkloadRef, int | None]:
    targets: dict[WorkloadRef, int | None] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            continue
        ref = WorkloadRef(
            kind=entry.get("kind") or KIND_DEPLOYMENT,
            namespace=entry.get("namespace") or "",
            name=entry["name"],
        )
        replicas = entry.get("replicas")
        targets[ref] = int(replicas) if replicas is not None else None
    return targets


def _conflicts_from_status(entries: list[dict[str, Any]]) -> tuple[TargetConflict, ...]:
    conflicts: list[TargetConflict] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            continue
        declaration_namespace, _, declaration_name = (entry.get("declaration") or "").partition("/")
        conflicts.append(
            TargetConflict(
                workload=WorkloadRef(
                    kind=entry.get("kind") or KIND_DEPLOYMENT,
                    namespace=entry.get("namespace") or "",
                    name=entry["name"],
                ),
                declaration=DeclarationRef(namespace=declaration_namespace, name=declaration_name),
            )
        )
    return tuple(sorted(conflicts))
