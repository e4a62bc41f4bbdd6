from __future__ import annotations

import re
from typing import Iterable

from .models import (
    SCOPE_NAMESPACE,
    DeclarationRef,
    InventorySnapshot,
    MaintenanceDeclaration,
    TargetConflict,
    VolumeClaim,
    Workload,
    WorkloadRef,
)


def select_targets(
    snapshot: InventorySnapshot,
    storage_class_names: Iterable[str],
    *,
    scope: str,
    declaration_namespace: str,
) -> dict[WorkloadRef, Workload]:
    """Return the workloads that mount storage of the requested classes.

    An empty ``storage_class_names`` selects workloads mounting any claim.
    With ``namespace`` scope only workloads in ``declaration_namespace`` are
    considered.
    """
    wanted = {name.strip() for name in storage_class_names if name and name.strip()}
    claim_index = _build_claim_index(snapshot.claims)

    selected: dict[WorkloadRef, Workload] = {}
    for workload in snapshot.workloads:
        if scope == SCOPE_NAMESPACE and workload.namespace != declaration_namespace:
            continue
        claims = mounted_claims(workload, claim_index)
        if any(_claim_matches(claim, wanted) for claim in claims):
            selected[workload.ref] = workload
    return selected


def mounted_claims(
    workload: Workload,
    claim_index: dict[str, dict[str, VolumeClaim]],
) -> list[VolumeClaim]:
    namespace_claims = claim_index.get(workload.namespace, {})
    claims: list[VolumeClaim] = []
    for claim_name in workload.claim_names:
        claim = namespace_claims.get(claim_name)
        if claim is not None:
            claims.append(claim)

    for template in workload.claim_templates:
        # StatefulSet claims are named <template>-<statefulset>-<ordinal>.
        pattern = re.compile(rf"^{re.escape(template)}-{re.escape(workload.name)}-\d+$")
        claims.extend(claim for name, claim in sorted(namespace_claims.items()) if pattern.match(name))
    return claims


def find_target_conflicts(
    declaration: MaintenanceDeclaration,
    claimed: Iterable[WorkloadRef],
    others: Iterable[MaintenanceDeclaration],
    snapshot: InventorySnapshot,
) -> tuple[TargetConflict, ...]:
    """Report workloads that another declaration claims with the opposite intent.

    A declaration claims its recorded targets and, while enabled, its current
    selection. Only overlaps between declarations whose ``enable`` flags differ
    are conflicts. Nothing is resolved here.
    """
    claimed_refs = set(claimed)
    conflicts: set[TargetConflict] = set()
    for other in others:
        if other.ref == declaration.ref or other.enable == declaration.enable:
            continue
        other_claimed = claimed_refs_for(other, snapshot)
        for workload_ref in claimed_refs & other_claimed:
            conflicts.add(TargetConflict(workload=workload_ref, declaration=other.ref))
    return tuple(sorted(conflicts))


def claimed_refs_for(declaration: MaintenanceDeclaration, snapshot: InventorySnapshot) -> set[WorkloadRef]:
    claimed = set(declaration.targets)
    if declaration.enable:
        claimed.update(
            select_targets(
                snapshot,
                declaration.storage_class_names,
                scope=declaration.scope,
                declaration_namespace=declaration.ref.namespace,
            )
        )
    return claimed


def conflicting_declarations(conflicts: Iterable[TargetConflict]) -> list[DeclarationRef]:
    return sorted({conflict.declaration for conflict in conflicts})


def _build_claim_index(claims: Iterable[VolumeClaim]) -> dict[str, dict[str, VolumeClaim]]:
    index: dict[str, dict[str, VolumeClaim]] = {}
    for claim in claims:
        index.setdefault(claim.namespace, {})[claim.name] = claim
    return index


def _claim_matches(claim: VolumeClaim, wanted: set[str]) -> bool:
    if not wanted:
        return True
    return claim.storage_class in wanted
