from __future__ import annotations

import logging
import threading
from typing import Mapping

from .decision import decide
from .k8s import ConflictError, KubernetesStoreError, NotFoundError
from .models import (
    SCOPE_NAMESPACE,
    TRANSITIONAL_STATES,
    DeclarationRef,
    DeclarationStatus,
    Decision,
    MaintenanceDeclaration,
    ReconcileOutcome,
    TargetConflict,
    Workload,
    WorkloadRef,
)
from .resources import status_of
from .selection import conflicting_declarations, find_target_conflicts, select_targets

DEFAULT_TRANSITION_REQUEUE_SECONDS = 10.0

logger = logging.getLogger(__name__)


class Reconciler:
    """Drive one MaintenanceMode declaration toward its declared state.

    ``store`` provides ``get_declaration``, ``list_declarations``,
    ``read_snapshot``, ``read_workload``, ``scale_workload`` and
    ``update_declaration_status``.
    The reconciler keeps no state between passes, so different declarations
    may be reconciled concurrently. The caller serializes passes of the same
    declaration.
    """

    def __init__(self, store, *, transition_requeue_seconds: float = DEFAULT_TRANSITION_REQUEUE_SECONDS) -> None:
        self.store = store
        self.transition_requeue_seconds = transition_requeue_seconds

    def reconcile(self, ref: DeclarationRef, cancel_event: threading.Event | None = None) -> ReconcileOutcome:
        if _cancelled(cancel_event):
            return ReconcileOutcome(cancelled=True, message="cancelled before start")

        try:
            declaration = self.store.get_declaration(ref)
        except NotFoundError:
            logger.info("MaintenanceMode %s not found; nothing to reconcile", ref)
            return ReconcileOutcome(message="declaration not found")

        if _cancelled(cancel_event):
            return ReconcileOutcome(cancelled=True, message="cancelled before inventory read")
        snapshot = self.store.read_snapshot(declaration.scope, ref.namespace)

        selected = select_targets(
            snapshot,
            declaration.storage_class_names,
            scope=declaration.scope,
            declaration_namespace=ref.namespace,
        )
        claimed = set(declaration.targets)
        if declaration.enable:
            claimed.update(selected)
        conflicts = self._detect_conflicts(declaration, claimed, snapshot, cancel_event)

        workloads = snapshot.workload_index()
        outside = self._read_targets_outside_snapshot(declaration, workloads, cancel_event)
        if outside is None:
            return ReconcileOutcome(cancelled=True, message="cancelled before reading suspended workloads")
        workloads.update(outside)
        decision = decide(
            selected=selected,
            workloads=workloads,
            enable=declaration.enable,
            prior_targets=declaration.targets,
            owner=ref,
        )
        logger.debug(
            "MaintenanceMode %s selected %d workloads, %d actions, next state %s",
            ref,
            len(selected),
            len(decision.actions),
            decision.next_state,
        )

        applied, failed, cancelled = self._apply(declaration, decision, workloads, cancel_event)
        if cancelled and not applied:
            return ReconcileOutcome(cancelled=True, message="cancelled before any update was applied")

        status = DeclarationStatus(
            state=decision.next_state,
            targets=_committed_targets(decision, declaration.targets, applied),
            conflicts=conflicts,
            failed_updates=len(failed),
            observed_generation=declaration.generation,
        )
        outcome = self._write_status(declaration, status)
        if outcome is not None:
            return outcome

        retry = bool(failed)
        requeue_after = None
        if not retry and not cancelled and status.state in TRANSITIONAL_STATES:
            requeue_after = self.transition_requeue_seconds

        message = ""
        if failed:
            message = f"{len(failed)} of {len(decision.actions)} workload updates failed"
        elif cancelled:
            message = "cancelled after applying some updates"
        return ReconcileOutcome(
            state=status.state,
            retry=retry,
            requeue_after=requeue_after,
            cancelled=cancelled,
            applied=tuple(applied),
            failed=tuple(failed),
            conflicts=conflicts,
            message=message,
        )

    def _read_targets_outside_snapshot(
        self,
        declaration: MaintenanceDeclaration,
        workloads: Mapping[WorkloadRef, Workload],
        cancel_event: threading.Event | None,
    ) -> dict[WorkloadRef, Workload] | None:
        """Read recorded targets the scoped snapshot cannot see.

        After a scope change a suspended workload may live outside the
        snapshot. It is only treated as gone once a direct read returns 404.
        Returns ``None`` when cancelled.
        """
        found: dict[WorkloadRef, Workload] = {}
        for ref in sorted(declaration.targets):
            if ref in workloads or (
                declaration.scope != SCOPE_NAMESPACE or ref.namespace == declaration.ref.namespace
            ):
                continue
            if _cancelled(cancel_event):
                return None
            try:
                found[ref] = self.store.read_workload(ref)
            except NotFoundError:
                logger.info("Suspended workload %s no longer exists", ref)
        return found

    def _detect_conflicts(
        self,
        declaration: MaintenanceDeclaration,
        claimed: set[WorkloadRef],
        snapshot,
        cancel_event: threading.Event | None,
    ) -> tuple[TargetConflict, ...]:
        if not claimed or _cancelled(cancel_event):
            return ()
        try:
            others = self.store.list_declarations()
        except KubernetesStoreError as error:
            logger.warning("Skipping target conflict detection for %s: %s", declaration.ref, error)
            return ()

        conflicts = find_target_conflicts(declaration, claimed, others, snapshot)
        for other in conflicting_declarations(conflicts):
            logger.warning(
                "MaintenanceMode %s and %s claim the same workloads with opposite intents",
                declaration.ref,
                other,
            )
        return conflicts

    def _apply(
        self,
        declaration: MaintenanceDeclaration,
        decision: Decision,
        workloads: Mapping[WorkloadRef, Workload],
        cancel_event: threading.Event | None,
    ) -> tuple[list[WorkloadRef], list[WorkloadRef], bool]:
        applied: list[WorkloadRef] = []
        failed: list[WorkloadRef] = []
        for ref, replicas in sorted(decision.actions.items()):
            if _cancelled(cancel_event):
                return applied, failed, True
            owner = declaration.ref if replicas == 0 else None
            try:
                self.store.scale_workload(
                    workloads[ref],
                    replicas,
                    owner=owner,
                    remembered_replicas=decision.targets.get(ref) if owner is not None else None,
                )
            except ConflictError as error:
                logger.info("Conflict scaling %s, will retry: %s", ref, error)
                failed.append(ref)
            except KubernetesStoreError as error:
                logger.warning("Failed to scale %s: %s", ref, error)
                failed.append(ref)
            else:
                applied.append(ref)
        return applied, failed, False

    def _write_status(self, declaration: MaintenanceDeclaration, status: DeclarationStatus) -> ReconcileOutcome | None:
        if status == status_of(declaration):
            return None
        try:
            self.store.update_declaration_status(declaration, status)
        except NotFoundError:
            logger.info("MaintenanceMode %s was deleted before its status could be written", declaration.ref)
            return ReconcileOutcome(message="declaration deleted during reconciliation")
        except ConflictError as error:
            logger.info("Conflict writing status of %s, will retry: %s", declaration.ref, error)
            return ReconcileOutcome(state=declaration.state, retry=True, message="status update conflict")

        if status.state != declaration.state:
            logger.info("MaintenanceMode %s moved from %s to %s", declaration.ref, declaration.state, status.state)
        return None


def _committed_targets(
    decision: Decision,
    prior_targets: Mapping[WorkloadRef, int | None],
    applied: list[WorkloadRef],
) -> dict[WorkloadRef, int | None]:
    # A new suspension record is kept only if its update went through.
    applied_refs = set(applied)
    return {
        ref: replicas
        for ref, replicas in decision.targets.items()
        if ref in prior_targets or ref in applied_refs or decision.actions.get(ref) != 0
    }


def _cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()
