from __future__ import annotations

from contextlib import contextmanager
import logging
import random
import threading
from typing import Any, Iterator

import kopf
from kubernetes import client

from .k8s import KubernetesStoreError
from .models import DeclarationRef
from .reconciler import Reconciler
from .resources import CRD_GROUP, CRD_PLURAL, CRD_VERSION

STORAGE_PREFIX = "maintenance-controller.rcluff.com"
BACKOFF_BASE_SECONDS = 0.5
BACKOFF_MAX_SECONDS = 60.0

logger = logging.getLogger(__name__)


def calculate_backoff(attempt: int, base_delay: float = BACKOFF_BASE_SECONDS, max_delay: float = BACKOFF_MAX_SECONDS) -> float:
    """Exponential backoff with up to 30% jitter for retry ``attempt`` (0-based)."""
    delay = min(base_delay * (2 ** max(0, attempt)), max_delay)
    return delay + random.uniform(0.1, 0.3) * delay


class PassTracker:
    """Run at most one pass per declaration and cancel passes on deletion.

    kopf serializes change handlers per object, but timers run beside them,
    so resync passes go through the same per-declaration lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locks: dict[DeclarationRef, threading.Lock] = {}
        self._cancel_events: dict[DeclarationRef, threading.Event] = {}

    @contextmanager
    def running(self, ref: DeclarationRef, *, blocking: bool = True) -> Iterator[threading.Event | None]:
        with self._lock:
            lock = self._locks.setdefault(ref, threading.Lock())
        if not lock.acquire(blocking=blocking):
            yield None
            return

        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[ref] = cancel_event
        try:
            yield cancel_event
        finally:
            with self._lock:
                self._cancel_events.pop(ref, None)
            lock.release()

    def cancel(self, ref: DeclarationRef) -> bool:
        with self._lock:
            cancel_event = self._cancel_events.get(ref)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            cancel_events = list(self._cancel_events.values())
        for cancel_event in cancel_events:
            cancel_event.set()


def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any) -> None:
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=STORAGE_PREFIX)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=STORAGE_PREFIX)
    settings.posting.level = logging.WARNING
    settings.execution.max_workers = memo.workers
    logger.info("Maintenance controller started with %d workers", memo.workers)


def login_with_clients(memo: kopf.Memo, **_: Any) -> kopf.ConnectionInfo:
    """Hand kopf the credentials already loaded for the configured kubeconfig context."""
    configuration: client.Configuration = memo.api_client.configuration
    header = configuration.get_api_key_with_prefix("authorization")
    scheme, _, token = (header or "").partition(" ")
    if header and not token:
        scheme, token = "Bearer", header

    return kopf.ConnectionInfo(
        server=configuration.host,
        ca_path=configuration.ssl_ca_cert,
        insecure=not configuration.verify_ssl,
        username=configuration.username or None,
        password=configuration.password or None,
        scheme=scheme or None,
        token=token or None,
        certificate_path=configuration.cert_file,
        private_key_path=configuration.key_file,
    )


def reconcile_declaration(namespace: str, name: str, retry: int, memo: kopf.Memo, **_: Any) -> None:
    ref = DeclarationRef(namespace=namespace, name=name)
    with memo.tracker.running(ref) as cancel_event:
        _reconcile(memo.reconciler, ref, cancel_event, retry)


def resync_declaration(namespace: str, name: str, retry: int, memo: kopf.Memo, **_: Any) -> None:
    ref = DeclarationRef(namespace=namespace, name=name)
    with memo.tracker.running(ref, blocking=False) as cancel_event:
        if cancel_event is None:
            logger.debug("Skipping resync of MaintenanceMode %s, a pass is in flight", ref)
            return
        _reconcile(memo.reconciler, ref, cancel_event, retry)


def handle_event(event: dict[str, Any], namespace: str, name: str, memo: kopf.Memo, **_: Any) -> None:
    if event.get("type") != "DELETED":
        return
    ref = DeclarationRef(namespace=namespace, name=name)
    if memo.tracker.cancel(ref):
        logger.info("MaintenanceMode %s deleted, cancelling its pass", ref)


def shutdown(memo: kopf.Memo, **_: Any) -> None:
    logger.info("Stopping maintenance controller")
    memo.tracker.cancel_all()


def _reconcile(reconciler: Reconciler, ref: DeclarationRef, cancel_event: threading.Event, retry: int) -> None:
    try:
        outcome = reconciler.reconcile(ref, cancel_event)
    except KubernetesStoreError as error:
        raise kopf.TemporaryError(str(error), delay=calculate_backoff(retry)) from error

    if outcome.cancelled:
        logger.info("Reconciliation of %s cancelled: %s", ref, outcome.message)
        return
    if outcome.retry:
        raise kopf.TemporaryError(outcome.message or "retry requested", delay=calculate_backoff(retry))
    if outcome.requeue_after is not None:
        raise kopf.TemporaryError(f"MaintenanceMode {ref} is {outcome.state}", delay=outcome.requeue_after)


def build_registry(*, resync_seconds: float) -> kopf.OperatorRegistry:
    registry = kopf.OperatorRegistry()
    kopf.on.startup(registry=registry)(configure)
    kopf.on.login(registry=registry)(login_with_clients)
    kopf.on.cleanup(registry=registry)(shutdown)
    for on_cause in (kopf.on.resume, kopf.on.create, kopf.on.update):
        on_cause(CRD_GROUP, CRD_VERSION, CRD_PLURAL, registry=registry)(reconcile_declaration)
    kopf.on.event(CRD_GROUP, CRD_VERSION, CRD_PLURAL, registry=registry)(handle_event)
    kopf.timer(
        CRD_GROUP,
        CRD_VERSION,
        CRD_PLURAL,
        interval=resync_seconds,
        initial_delay=resync_seconds,
        registry=registry,
    )(resync_declaration)
    return registry


def run(
    *,
    api_client: client.ApiClient,
    reconciler: Reconciler,
    watch_namespace: str | None = None,
    resync_seconds: float = 300,
    workers: int = 2,
) -> None:
    logger.info(
        "Starting maintenance controller: namespace=%s, workers=%d, resync=%ss",
        watch_namespace or "<all>",
        workers,
        resync_seconds,
    )
    kopf.run(
        registry=build_registry(resync_seconds=resync_seconds),
        memo=kopf.Memo(api_client=api_client, reconciler=reconciler, tracker=PassTracker(), workers=workers),
        standalone=True,
        clusterwide=not watch_namespace,
        namespaces=[watch_namespace] if watch_namespace else (),
    )
