from __future__ import annotations

from types import SimpleNamespace

from fakes import make_workload

from maintenance_controller.models import (
    KIND_DEPLOYMENT,
    KIND_STATEFULSET,
    SCOPE_CLUSTER,
    SCOPE_NAMESPACE,
    STATE_ENABLED,
    STATE_PENDING,
    DeclarationRef,
    DeclarationStatus,
    TargetConflict,
    WorkloadRef,
)
from maintenance_controller.resources import (
    MAINTENANCE_MODE_ANNOTATION,
    ORIGINAL_REPLICAS_ANNOTATION,
    declaration_from_object,
    normalize_scope,
    replica_patch,
    status_to_object,
    workload_from_object,
)


def _claim_volume(claim_name: str) -> SimpleNamespace:
    return SimpleNamespace(persistent_volume_claim=SimpleNamespace(claim_name=claim_name))


def _workload_object(
    *,
    name: str = "web",
    namespace: str = "apps",
    replicas: int | None = 2,
    status_replicas: int | None = 2,
    volumes: list | None = None,
    claim_templates: list[str] | None = None,
    annotations: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            resource_version="42",
            annotations=annotations,
        ),
        spec=SimpleNamespace(
            replicas=replicas,
            template=SimpleNamespace(spec=SimpleNamespace(volumes=volumes)),
            volume_claim_templates=[
                SimpleNamespace(metadata=SimpleNamespace(name=template)) for template in claim_templates or []
            ],
        ),
        status=SimpleNamespace(replicas=status_replicas),
    )


def test_declaration_from_object_with_full_resource_parses_spec_and_status() -> None:
    declaration = declaration_from_object(
        {
            "metadata": {"namespace": "ops", "name": "ssd", "generation": 4, "resourceVersion": "77"},
            "spec": {"enable": True, "scope": "namespace", "storageClassNames": ["ssd", ""]},
            "status": {
                "state": "Enabled",
                "targets": [{"kind": "StatefulSet", "namespace": "ops", "name": "db", "replicas": 3}],
                "conflicts": [{"kind": "Deployment", "namespace": "ops", "name": "web", "declaration": "ops/other"}],
                "failedUpdates": 2,
                "observedGeneration": 3,
            },
        }
    )

    assert declaration.ref == DeclarationRef(namespace="ops", name="ssd")
    assert declaration.enable is True
    assert declaration.scope == SCOPE_NAMESPACE
    assert declaration.storage_class_names == ("ssd",)
    assert declaration.state == STATE_ENABLED
    assert declaration.targets == {WorkloadRef(KIND_STATEFULSET, "ops", "db"): 3}
    assert declaration.conflicts == (
        TargetConflict(workload=WorkloadRef(KIND_DEPLOYMENT, "ops", "web"), declaration=DeclarationRef("ops", "other")),
    )
    assert declaration.failed_updates == 2
    assert declaration.generation == 4
    assert declaration.observed_generation == 3
    assert declaration.resource_version == "77"


def test_declaration_from_object_without_status_starts_pending_with_cluster_scope() -> None:
    declaration = declaration_from_object({"metadata": {"namespace": "ops", "name": "ssd"}, "spec": {"enable": False}})

    assert declaration.state == STATE_PENDING
    assert declaration.scope == SCOPE_CLUSTER
    assert declaration.storage_class_names == ()
    assert declaration.targets == {}


def test_declaration_from_object_with_target_missing_replicas_keeps_unknown_count() -> None:
    declaration = declaration_from_object(
        {
            "metadata": {"namespace": "ops", "name": "ssd"},
            "spec": {"enable": False},
            "status": {"targets": [{"namespace": "apps", "name": "web"}, {"namespace": "apps"}]},
        }
    )

    assert declaration.targets == {WorkloadRef(KIND_DEPLOYMENT, "apps", "web"): None}


def test_normalize_scope_with_unknown_value_defaults_to_cluster() -> None:
    assert normalize_scope(None) == SCOPE_CLUSTER
    assert normalize_scope("Namespace ") == SCOPE_NAMESPACE
    assert normalize_scope("galaxy") == SCOPE_CLUSTER


def test_status_to_object_with_targets_serializes_sorted_entries() -> None:
    status = DeclarationStatus(
        state=STATE_ENABLED,
        targets={
            WorkloadRef(KIND_DEPLOYMENT, "apps", "web"): 3,
            WorkloadRef(KIND_DEPLOYMENT, "apps", "api"): None,
        },
        conflicts=(TargetConflict(workload=WorkloadRef(KIND_DEPLOYMENT, "apps", "web"), declaration=DeclarationRef("ops", "b")),),
        failed_updates=1,
        observed_generation=5,
    )

    body = status_to_object(status)

    assert body["state"] == STATE_ENABLED
    assert body["targets"] == [
        {"kind": "Deployment", "namespace": "apps", "name": "api", "replicas": None},
        {"kind": "Deployment", "namespace": "apps", "name": "web", "replicas": 3},
    ]
    assert body["conflicts"] == [{"kind": "Deployment", "namespace": "apps", "name": "web", "declaration": "ops/b"}]
    assert body["failedUpdates"] == 1
    assert body["observedGeneration"] == 5


def test_workload_from_object_with_deployment_collects_unique_claim_names() -> None:
    workload = workload_from_object(
        KIND_DEPLOYMENT,
        _workload_object(
            volumes=[
                _claim_volume("data"),
                _claim_volume("data"),
                SimpleNamespace(persistent_volume_claim=None),
            ]
        ),
    )

    assert workload.ref == WorkloadRef(KIND_DEPLOYMENT, "apps", "web")
    assert workload.claim_names == ("data",)
    assert workload.claim_templates == ()
    assert workload.resource_version == "42"


def test_workload_from_object_with_unset_replicas_uses_kubernetes_default() -> None:
    workload = workload_from_object(KIND_DEPLOYMENT, _workload_object(replicas=None, status_replicas=None))

    assert workload.replicas == 1
    assert workload.observed_replicas == 0


def test_workload_from_object_with_statefulset_reads_claim_templates() -> None:
    workload = workload_from_object(KIND_STATEFULSET, _workload_object(name="db", claim_templates=["pgdata"]))

    assert workload.claim_templates == ("pgdata",)


def test_workload_from_object_with_maintenance_annotations_reads_owner_and_count() -> None:
    workload = workload_from_object(
        KIND_DEPLOYMENT,
        _workload_object(
            replicas=0,
            annotations={MAINTENANCE_MODE_ANNOTATION: "ops/ssd", ORIGINAL_REPLICAS_ANNOTATION: "4"},
        ),
    )

    assert workload.suspended_by == DeclarationRef(namespace="ops", name="ssd")
    assert workload.suspended_replicas == 4


def test_workload_from_object_with_malformed_annotations_ignores_them() -> None:
    workload = workload_from_object(
        KIND_DEPLOYMENT,
        _workload_object(annotations={MAINTENANCE_MODE_ANNOTATION: "no-slash", ORIGINAL_REPLICAS_ANNOTATION: "many"}),
    )

    assert workload.suspended_by is None
    assert workload.suspended_replicas is None


def test_replica_patch_with_owner_stamps_annotations_and_resource_version() -> None:
    body = replica_patch(make_workload(name="web"), 0, owner=DeclarationRef("ops", "ssd"), remembered_replicas=3)

    assert body == {
        "metadata": {
            "annotations": {MAINTENANCE_MODE_ANNOTATION: "ops/ssd", ORIGINAL_REPLICAS_ANNOTATION: "3"},
            "resourceVersion": "1",
        },
        "spec": {"replicas": 0},
    }


def test_replica_patch_without_owner_removes_annotations() -> None:
    body = replica_patch(make_workload(name="web", replicas=0), 3, owner=None)

    assert body["metadata"]["annotations"] == {MAINTENANCE_MODE_ANNOTATION: None, ORIGINAL_REPLICAS_ANNOTATION: None}
    assert body["spec"] == {"replicas": 3}
