from __future__ import annotations

from pathlib import Path

import yaml

from maintenance_controller.models import SCOPE_CLUSTER, SCOPE_NAMESPACE, STATE_DISABLED, STATE_ENABLED, STATE_PENDING
from maintenance_controller.resources import CRD_GROUP, CRD_KIND, CRD_PLURAL, CRD_VERSION

_APP_MANIFEST_DIR = Path("deploy/k8s/app")
_CRD_MANIFEST = Path("deploy/k8s/crd/maintenancemodes.yaml")


def _read_yaml_document(file_name: str) -> dict:
    return yaml.safe_load((_APP_MANIFEST_DIR / file_name).read_text(encoding="utf-8"))


def _deployment_manifest() -> dict:
    return _read_yaml_document("deployment.yaml")


def _deployment_container() -> dict:
    deployment = _deployment_manifest()
    return deployment["spec"]["template"]["spec"]["containers"][0]


def _container_env_map() -> dict[str, str]:
    env_entries = _deployment_container()["env"]
    return {entry["name"]: entry["value"] for entry in env_entries}


def _crd_manifest() -> dict:
    return yaml.safe_load(_CRD_MANIFEST.read_text(encoding="utf-8"))


def _crd_version() -> dict:
    return _crd_manifest()["spec"]["versions"][0]


def test_deployment_with_controller_env_runs_in_cluster_watch_loop() -> None:
    env = _container_env_map()

    assert env["MMC_IN_CLUSTER"] == "true"
    assert int(env["MMC_RESYNC_SECONDS"]) > 0
    assert int(env["MMC_WORKERS"]) > 0
    assert _deployment_container()["args"] == ["run"]


def test_deployment_with_single_replica_uses_controller_service_account() -> None:
    deployment = _deployment_manifest()

    assert deployment["spec"]["replicas"] == 1
    assert deployment["spec"]["template"]["spec"]["serviceAccountName"] == "maintenance-controller"


def test_deployment_with_hardened_security_context_disables_privilege_escalation() -> None:
    deployment = _deployment_manifest()
    pod_security_context = deployment["spec"]["template"]["spec"]["securityContext"]
    container_security_context = _deployment_container()["securityContext"]

    assert pod_security_context["runAsNonRoot"] is True
    assert pod_security_context["seccompProfile"]["type"] == "RuntimeDefault"
    assert container_security_context["allowPrivilegeEscalation"] is False
    assert container_security_context["privileged"] is False
    assert container_security_context["readOnlyRootFilesystem"] is True
    assert container_security_context["capabilities"]["drop"] == ["ALL"]


def test_kustomization_with_app_bundle_sets_expected_namespace_and_resources() -> None:
    kustomization = _read_yaml_document("kustomization.yaml")

    assert kustomization["namespace"] == "maintenance-controller"
    assert kustomization["resources"] == [
        "namespace.yaml",
        "../crd/maintenancemodes.yaml",
        "../rbac/serviceaccount.yaml",
        "../rbac/clusterrole.yaml",
        "../rbac/clusterrolebinding.yaml",
        "deployment.yaml",
    ]


def test_crd_with_controller_constants_matches_group_version_and_kind() -> None:
    crd = _crd_manifest()

    assert crd["metadata"]["name"] == f"{CRD_PLURAL}.{CRD_GROUP}"
    assert crd["spec"]["group"] == CRD_GROUP
    assert crd["spec"]["names"]["kind"] == CRD_KIND
    assert crd["spec"]["names"]["plural"] == CRD_PLURAL
    assert crd["spec"]["scope"] == "Namespaced"
    assert _crd_version()["name"] == CRD_VERSION


def test_crd_with_status_subresource_enables_status_patches() -> None:
    assert _crd_version()["subresources"] == {"status": {}}


def test_crd_with_spec_schema_requires_enable_and_defaults_scope_to_cluster() -> None:
    spec_schema = _crd_version()["schema"]["openAPIV3Schema"]["properties"]["spec"]

    assert spec_schema["required"] == ["enable"]
    assert spec_schema["properties"]["scope"]["enum"] == [SCOPE_CLUSTER, SCOPE_NAMESPACE]
    assert spec_schema["properties"]["scope"]["default"] == SCOPE_CLUSTER


def test_crd_with_status_schema_lists_every_reported_state() -> None:
    status_schema = _crd_version()["schema"]["openAPIV3Schema"]["properties"]["status"]
    states = status_schema["properties"]["state"]["enum"]

    assert {STATE_PENDING, STATE_ENABLED, STATE_DISABLED}.issubset(states)
    assert set(status_schema["properties"]) == {"state", "targets", "conflicts", "failedUpdates", "observedGeneration"}
    assert status_schema["properties"]["targets"]["items"]["properties"]["replicas"]["nullable"] is True
