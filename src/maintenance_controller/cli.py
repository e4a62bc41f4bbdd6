from __future__ import annotations

import argparse
from dataclasses import replace
import logging
import sys
from typing import Any, Sequence

import yaml

from .config import AppConfig, validate_config
from . import handlers
from .k8s import KubernetesAuthenticationError, KubernetesStore, KubernetesStoreError, load_kubernetes_clients
from .models import DeclarationRef, MaintenanceDeclaration, ReconcileOutcome
from .reconciler import Reconciler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="maintenance-controller",
        description="Suspend and restore workloads that use storage under maintenance.",
    )
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file (env: MMC_KUBECONFIG)")
    parser.add_argument("--context", help="Kubeconfig context to use (env: MMC_CONTEXT)")
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        default=None,
        help="Use the pod service account (env: MMC_IN_CLUSTER)",
    )
    parser.add_argument("--log-level", help="Logging level (env: MMC_LOG_LEVEL)")
    parser.add_argument(
        "--request-timeout",
        type=int,
        dest="request_timeout_seconds",
        help="Timeout in seconds for each API request (env: MMC_REQUEST_TIMEOUT_SECONDS)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Watch MaintenanceMode resources and reconcile them")
    run_parser.add_argument("--namespace", dest="watch_namespace", help="Only watch this namespace")
    run_parser.add_argument("--workers", type=int, help="Number of reconcile workers")
    run_parser.add_argument("--resync", type=int, dest="resync_seconds", help="Seconds between full resyncs")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run a single reconciliation pass")
    reconcile_parser.add_argument("namespace")
    reconcile_parser.add_argument("name")

    list_parser = subparsers.add_parser("list", help="Show MaintenanceMode resources and their status")
    list_parser.add_argument("--namespace", dest="watch_namespace", help="Only list this namespace")
    return parser


def config_from_args(args: argparse.Namespace, base: AppConfig | None = None) -> AppConfig:
    config = base or AppConfig()
    overrides = {
        "kubeconfig_path": args.kubeconfig,
        "context": args.context,
        "in_cluster": args.in_cluster,
        "log_level": args.log_level,
        "request_timeout_seconds": args.request_timeout_seconds,
        "watch_namespace": getattr(args, "watch_namespace", None),
        "workers": getattr(args, "workers", None),
        "resync_seconds": getattr(args, "resync_seconds", None),
    }
    return replace(config, **{key: value for key, value in overrides.items() if value is not None})


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def outcome_summary(ref: DeclarationRef, outcome: ReconcileOutcome) -> dict[str, Any]:
    return {
        "declaration": str(ref),
        "state": outcome.state,
        "retry": outcome.retry,
        "requeueAfter": outcome.requeue_after,
        "applied": [str(item) for item in outcome.applied],
        "failed": [str(item) for item in outcome.failed],
        "conflicts": [
            {"workload": str(conflict.workload), "declaration": str(conflict.declaration)}
            for conflict in outcome.conflicts
        ],
        "message": outcome.message,
    }


def declaration_summary(declaration: MaintenanceDeclaration) -> dict[str, Any]:
    return {
        "declaration": str(declaration.ref),
        "enable": declaration.enable,
        "scope": declaration.scope,
        "storageClassNames": list(declaration.storage_class_names) or ["*"],
        "state": declaration.state,
        "targets": len(declaration.targets),
        "conflicts": len(declaration.conflicts),
    }


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = config_from_args(args)
        validate_config(config)
    except ValueError as error:
        parser.error(str(error))

    configure_logging(config.log_level)

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return 2

    store = KubernetesStore(clients, request_timeout_seconds=config.request_timeout_seconds)
    reconciler = Reconciler(store, transition_requeue_seconds=config.transition_requeue_seconds)

    if args.command == "run":
        handlers.run(
            api_client=clients.api_client,
            reconciler=reconciler,
            watch_namespace=config.watch_namespace,
            resync_seconds=config.resync_seconds,
            workers=config.workers,
        )
        return 0

    try:
        if args.command == "reconcile":
            ref = DeclarationRef(namespace=args.namespace, name=args.name)
            outcome = reconciler.reconcile(ref)
            yaml.safe_dump(outcome_summary(ref, outcome), sys.stdout, sort_keys=False)
            return 1 if outcome.retry else 0

        declarations = store.list_declarations(config.watch_namespace)
        yaml.safe_dump([declaration_summary(item) for item in declarations], sys.stdout, sort_keys=False)
        return 0
    except KubernetesStoreError as error:
        logger.error("%s", error)
        return 1


if __name__ == "__main__":
    sys.exit(main())
