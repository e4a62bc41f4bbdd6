from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import (
    KIND_DEPLOYMENT,
    KIND_STATEFULSET,
    SCOPE_NAMESPACE,
    DeclarationRef,
    DeclarationStatus,
    InventorySnapshot,
    MaintenanceDeclaration,
    Workload,
    WorkloadRef,
)
from .resources import (
    CRD_GROUP,
    CRD_PLURAL,
    CRD_VERSION,
    claim_from_pvc,
    declaration_from_object,
    replica_patch,
    status_to_object,
    workload_from_object,
)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesStoreError(RuntimeError):
    def __init__(self, message: str, *, operation: str, status: int | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status = status


class NotFoundError(KubernetesStoreError):
    """Raised when the requested object no longer exists."""


class ConflictError(KubernetesStoreError):
    """Raised when a conditional update lost an optimistic-concurrency race."""


class UnavailableError(KubernetesStoreError):
    """Raised when the API server could not complete a request."""


class InventoryUnavailableError(KubernetesStoreError):
    """Raised when the claim or workload inventory cannot be listed."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


class KubernetesStore:
    """Object store backed by the Kubernetes API.

    Every call is a single bounded request. API failures surface as
    ``NotFoundError``, ``ConflictError`` or ``UnavailableError``; list failures
    while building a snapshot surface as ``InventoryUnavailableError``.
    """

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds

    def get_declaration(self, ref: DeclarationRef) -> MaintenanceDeclaration:
        obj = _safe_kubernetes_call(
            operation=f"get MaintenanceMode '{ref}'",
            hint="Verify RBAC allows get on maintenancemodes.",
            func=lambda: self.clients.custom_api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=ref.namespace,
                plural=CRD_PLURAL,
                name=ref.name,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return declaration_from_object(obj)

    def list_declarations(self, namespace: str | None = None) -> list[MaintenanceDeclaration]:
        if namespace:
            response = _safe_kubernetes_call(
                operation=f"list MaintenanceModes in namespace '{namespace}'",
                hint="Verify RBAC allows list on maintenancemodes in this namespace.",
                func=lambda: self.clients.custom_api.list_namespaced_custom_object(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    namespace=namespace,
                    plural=CRD_PLURAL,
                    _request_timeout=self.request_timeout_seconds,
                ),
            )
        else:
            response = _safe_kubernetes_call(
                operation="list MaintenanceModes across all namespaces",
                hint="Verify the CRD is installed and RBAC allows list on maintenancemodes.",
                func=lambda: self.clients.custom_api.list_cluster_custom_object(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    plural=CRD_PLURAL,
                    _request_timeout=self.request_timeout_seconds,
                ),
            )
        declarations = [declaration_from_object(item) for item in response.get("items") or []]
        declarations.sort(key=lambda item: item.ref)
        return declarations

    def read_snapshot(self, scope: str, namespace: str) -> InventorySnapshot:
        return read_inventory_snapshot(
            self.clients,
            scope=scope,
            namespace=namespace,
            request_timeout_seconds=self.request_timeout_seconds,
        )

    def read_workload(self, ref: WorkloadRef) -> Workload:
        if ref.kind == KIND_STATEFULSET:
            read = self.clients.apps_api.read_namespaced_stateful_set
        elif ref.kind == KIND_DEPLOYMENT:
            read = self.clients.apps_api.read_namespaced_deployment
        else:
            raise ValueError(f"unsupported workload kind: {ref.kind}")

        obj = _safe_kubernetes_call(
            operation=f"read {ref}",
            hint="Verify RBAC allows get on deployments and statefulsets.",
            func=lambda: read(
                name=ref.name,
                namespace=ref.namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return workload_from_object(ref.kind, obj)

    def scale_workload(
        self,
        workload: Workload,
        replicas: int,
        *,
        owner: DeclarationRef | None,
        remembered_replicas: int | None = None,
    ) -> None:
        body = replica_patch(workload, replicas, owner=owner, remembered_replicas=remembered_replicas)
        if workload.ref.kind == KIND_STATEFULSET:
            patch = self.clients.apps_api.patch_namespaced_stateful_set
        elif workload.ref.kind == KIND_DEPLOYMENT:
            patch = self.clients.apps_api.patch_namespaced_deployment
        else:
            raise ValueError(f"unsupported workload kind: {workload.ref.kind}")

        _safe_kubernetes_call(
            operation=f"scale {workload.ref} to {replicas} replicas",
            hint="Verify RBAC allows patch on deployments and statefulsets.",
            func=lambda: patch(
                name=workload.name,
                namespace=workload.namespace,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        logger.info("Scaled %s to %d replicas", workload.ref, replicas)

    def update_declaration_status(self, declaration: MaintenanceDeclaration, status: DeclarationStatus) -> None:
        body: dict = {"status": status_to_object(status)}
        if declaration.resource_version:
            body["metadata"] = {"resourceVersion": declaration.resource_version}

        _safe_kubernetes_call(
            operation=f"update status of MaintenanceMode '{declaration.ref}'",
            hint="Verify RBAC allows patch on maintenancemodes/status.",
            func=lambda: self.clients.custom_api.patch_namespaced_custom_object_status(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=declaration.ref.namespace,
                plural=CRD_PLURAL,
                name=declaration.ref.name,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )


def read_inventory_snapshot(
    clients: KubernetesClients,
    *,
    scope: str,
    namespace: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> InventorySnapshot:
    if request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")

    if scope == SCOPE_NAMESPACE:
        if not namespace:
            raise ValueError("namespace is required for namespace scope")
        pvc_items = _safe_inventory_call(
            operation=f"list PVCs in namespace '{namespace}'",
            hint="Check RBAC verbs for persistentvolumeclaims and confirm the namespace exists.",
            func=lambda: clients.core_api.list_namespaced_persistent_volume_claim(
                namespace=namespace,
                _request_timeout=request_timeout_seconds,
            ).items,
        )
        deployment_items = _safe_inventory_call(
            operation=f"list Deployments in namespace '{namespace}'",
            hint="Check RBAC verbs for deployments.",
            func=lambda: clients.apps_api.list_namespaced_deployment(
                namespace=namespace,
                _request_timeout=request_timeout_seconds,
            ).items,
        )
        statefulset_items = _safe_inventory_call(
            operation=f"list StatefulSets in namespace '{namespace}'",
            hint="Check RBAC verbs for statefulsets.",
            func=lambda: clients.apps_api.list_namespaced_stateful_set(
                namespace=namespace,
                _request_timeout=request_timeout_seconds,
            ).items,
        )
    else:
        pvc_items = _safe_inventory_call(
            operation="list PVCs across all namespaces",
            hint="Verify RBAC verbs for persistentvolumeclaims at cluster scope.",
            func=lambda: clients.core_api.list_persistent_volume_claim_for_all_namespaces(
                _request_timeout=request_timeout_seconds
            ).items,
        )
        deployment_items = _safe_inventory_call(
            operation="list Deployments across all namespaces",
            hint="Verify RBAC verbs for deployments at cluster scope.",
            func=lambda: clients.apps_api.list_deployment_for_all_namespaces(
                _request_timeout=request_timeout_seconds
            ).items,
        )
        statefulset_items = _safe_inventory_call(
            operation="list StatefulSets across all namespaces",
            hint="Verify RBAC verbs for statefulsets at cluster scope.",
            func=lambda: clients.apps_api.list_stateful_set_for_all_namespaces(
                _request_timeout=request_timeout_seconds
            ).items,
        )

    claims = [claim_from_pvc(pvc) for pvc in pvc_items or []]
    workloads = [workload_from_object(KIND_DEPLOYMENT, item) for item in deployment_items or []]
    workloads.extend(workload_from_object(KIND_STATEFULSET, item) for item in statefulset_items or [])

    claims.sort(key=lambda item: (item.namespace, item.name))
    workloads.sort(key=lambda item: item.ref)
    return InventorySnapshot(claims=tuple(claims), workloads=tuple(workloads))


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        message = _format_api_exception_message(operation=operation, hint=hint, error=error)
        if error.status == 404:
            raise NotFoundError(message, operation=operation, status=error.status) from error
        if error.status == 409:
            raise ConflictError(message, operation=operation, status=error.status) from error
        raise UnavailableError(message, operation=operation, status=error.status) from error
    except Exception as error:
        raise UnavailableError(
            f"Kubernetes request failed while trying to {operation}: {error}. {hint}",
            operation=operation,
        ) from error


def _safe_inventory_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise InventoryUnavailableError(
            _format_api_exception_message(operation=operation, hint=hint, error=error),
            operation=operation,
            status=error.status,
        ) from error
    except Exception as error:
        raise InventoryUnavailableError(
            f"Kubernetes inventory read failed while trying to {operation}: {error}. {hint}",
            operation=operation,
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes request failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
