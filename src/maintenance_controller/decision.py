from __future__ import annotations

from typing import Mapping

from .models import (
    STATE_DISABLED,
    STATE_ENABLED,
    STATE_SCALING_DOWN,
    STATE_SCALING_UP,
    DeclarationRef,
    Decision,
    Workload,
    WorkloadRef,
)

MIN_RESTORE_REPLICAS = 1


def decide(
    *,
    selected: Mapping[WorkloadRef, Workload],
    workloads: Mapping[WorkloadRef, Workload],
    enable: bool,
    prior_targets: Mapping[WorkloadRef, int | None],
    owner: DeclarationRef | None = None,
) -> Decision:
    """Compute replica actions, the targets to record and the next state.

    Pure: every input comes from the caller and nothing is applied. A target
    leaves ``targets`` only once its restore is confirmed or the workload is
    gone from the cluster. Workloads stamped as suspended by ``owner`` but
    missing from ``prior_targets`` are adopted with their stamped count.
    """
    prior_targets = {**adopted_targets(workloads, prior_targets, owner), **prior_targets}
    actions: dict[WorkloadRef, int] = {}
    targets: dict[WorkloadRef, int | None] = {}
    in_transition = False

    if enable:
        for ref, workload in sorted(selected.items()):
            if workload.replicas > 0:
                actions[ref] = 0
                # The first recorded count wins over anything observed later.
                targets[ref] = prior_targets[ref] if ref in prior_targets else workload.replicas
                continue
            if ref in prior_targets:
                targets[ref] = prior_targets[ref]
            if workload.observed_replicas > 0:
                in_transition = True
        released = {ref: remembered for ref, remembered in prior_targets.items() if ref not in selected}
    else:
        released = dict(prior_targets)

    for ref, remembered in sorted(released.items()):
        workload = workloads.get(ref)
        if workload is None:
            continue
        replicas = restore_replicas(remembered)
        if workload.replicas != replicas:
            actions[ref] = replicas
            targets[ref] = remembered
        elif workload.observed_replicas != replicas:
            targets[ref] = remembered
            in_transition = True

    if actions or in_transition:
        next_state = STATE_SCALING_DOWN if enable else STATE_SCALING_UP
    else:
        next_state = STATE_ENABLED if enable else STATE_DISABLED

    return Decision(actions=actions, targets=targets, next_state=next_state)


def adopted_targets(
    workloads: Mapping[WorkloadRef, Workload],
    prior_targets: Mapping[WorkloadRef, int | None],
    owner: DeclarationRef | None,
) -> dict[WorkloadRef, int | None]:
    if owner is None:
        return {}
    return {
        ref: workload.suspended_replicas
        for ref, workload in workloads.items()
        if workload.suspended_by == owner and ref not in prior_targets
    }


def restore_replicas(remembered: int | None) -> int:
    if remembered is None or remembered < MIN_RESTORE_REPLICAS:
        return MIN_RESTORE_REPLICAS
    return remembered
