"""
Rados Namespace Operator — Kubernetes Operator for Ceph RBD rados namespaces

Architecture:
  CephBlockPoolRadosNamespace CRD → Operator watches → Reconcile Engine:
    1. Ensure finalizer
    2. Gate on CephCluster / CephBlockPool readiness
    3. rbd namespace create (idempotent)
    4. Project CSI cluster config
    5. Reconcile mirroring + mirror health monitor
    6. Update status → Ready / Failure

  On Delete (Finalizer):
    1. rbd namespace remove (blocked while images remain)
    2. Optional forced cleanup job (ceph.rook.io/force-deletion annotation)
    3. Clear CSI config, remove finalizer

  CephBlockPool changes:
    Re-reconcile every rados namespace that references the pool; the pool
    handler retries until every one of them settles

Outcome mapping:
  - NoOp              → handler succeeds
  - RequeueAfter(d)   → TemporaryError(delay=d)
  - RequeueImmediate  → TemporaryError(delay=0)
  - Error             → warning event + TemporaryError(delay=30)
"""

import logging
import threading

import kopf
from prometheus_client import start_http_server

from .config import settings as operator_settings
from .engine import ReconcileEngine
from .outcome import Outcome, OutcomeKind
from .registry import MonitorRegistry
from .services.kubernetes_service import (
    CleanupJobLauncher,
    ClientProfileRegistrar,
    CsiConfigStore,
    KubernetesClusterGate,
    KubernetesResourceStore,
)
from .services.rbd_client import RbdCliBackend

logger = logging.getLogger("radosns-operator")

CRD_GROUP = operator_settings.CRD_GROUP
CRD_VERSION = operator_settings.CRD_VERSION
CRD_PLURAL = operator_settings.CRD_PLURAL
POOL_PLURAL = operator_settings.POOL_PLURAL

# Backoff for failed passes; kopf retries the handler after this delay
ERROR_RETRY_DELAY = 30
IMMEDIATE_RETRY_DELAY = 0

# ---------------------------------------------------------------------------
# Engine, built on first use
# ---------------------------------------------------------------------------
_engine = None
_engine_lock = threading.Lock()
_stop_event = threading.Event()


def get_engine() -> ReconcileEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            store = KubernetesResourceStore()
            _engine = ReconcileEngine(
                store=store,
                backend=RbdCliBackend(),
                cluster_gate=KubernetesClusterGate(),
                config_projection=CsiConfigStore(),
                cleanup_jobs=CleanupJobLauncher(),
                client_profiles=ClientProfileRegistrar() if operator_settings.ENABLE_CSI_OPERATOR else None,
                registry=MonitorRegistry(_stop_event),
                logger=logger,
            )
        return _engine


def retry_delay(outcome: Outcome) -> int:
    """Seconds kopf should wait before retrying a non-NoOp outcome."""
    if outcome.kind is OutcomeKind.REQUEUE_AFTER:
        return outcome.delay
    if outcome.kind is OutcomeKind.REQUEUE_IMMEDIATE:
        return IMMEDIATE_RETRY_DELAY
    return ERROR_RETRY_DELAY


def apply_outcome(body, outcome: Outcome):
    """Translate an engine Outcome into kopf retry semantics."""
    if outcome.kind is OutcomeKind.NO_OP:
        return {"result": "ok"}
    if outcome.kind is OutcomeKind.REQUEUE_AFTER:
        raise kopf.TemporaryError(outcome.reason or "requeue", delay=retry_delay(outcome))
    if outcome.kind is OutcomeKind.REQUEUE_IMMEDIATE:
        message = str(outcome.error) if outcome.error else (outcome.reason or "requeue")
        raise kopf.TemporaryError(message, delay=retry_delay(outcome))
    kopf.warn(body, reason="ReconcileFailed", message=str(outcome.error)[:500])
    raise kopf.TemporaryError(f"Retrying: {outcome.error}", delay=retry_delay(outcome))


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    settings.posting.enabled = True
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix="radosns.ceph.rook.io"
    )
    settings.execution.max_workers = operator_settings.MAX_WORKERS
    if operator_settings.METRICS_PORT:
        start_http_server(operator_settings.METRICS_PORT)
    logger.info(
        f"Rados Namespace Operator started (max_workers={operator_settings.MAX_WORKERS}, "
        f"metrics_port={operator_settings.METRICS_PORT}, "
        f"csi_operator={operator_settings.ENABLE_CSI_OPERATOR})"
    )


@kopf.on.cleanup()
def shutdown(**kwargs):
    """Cancel every mirror monitor; threads exit on their own."""
    _stop_event.set()
    if _engine is not None:
        _engine.registry.stop_all()
    logger.info("Rados Namespace Operator stopped")


# ---------------------------------------------------------------------------
# CephBlockPoolRadosNamespace — create / update / resume / delete
# ---------------------------------------------------------------------------

# optional=True: the engine owns the finalizer, kopf must not add its own
@kopf.on.resume(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
@kopf.on.create(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
@kopf.on.update(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
@kopf.on.delete(CRD_GROUP, CRD_VERSION, CRD_PLURAL, optional=True)
def reconcile_rados_namespace(name, namespace, body, **kwargs):
    """Run one engine pass for the resource and map its Outcome onto kopf."""
    outcome = get_engine().reconcile(namespace, name)
    return apply_outcome(body, outcome)


# ---------------------------------------------------------------------------
# CephBlockPool — fan out to the rados namespaces it hosts
# ---------------------------------------------------------------------------

@kopf.on.create(CRD_GROUP, CRD_VERSION, POOL_PLURAL)
@kopf.on.update(CRD_GROUP, CRD_VERSION, POOL_PLURAL)
def on_block_pool_change(name, namespace, **kwargs):
    """
    Re-run every rados namespace hosted by the pool. Children that did not
    settle make the pool handler retry after the shortest delay any of them asked for.
    """
    engine = get_engine()
    children = engine.store.list_namespaces_for_pool(namespace, name)
    failed = []
    pending = []
    for ns in children:
        outcome = engine.reconcile(ns.namespace, ns.name)
        if outcome.is_error:
            failed.append(ns.name)
        if outcome.kind is not OutcomeKind.NO_OP:
            pending.append(retry_delay(outcome))
    if failed:
        logger.warning(f"CephBlockPool {name}: {len(failed)} rados namespace(s) failed: {failed}")
    if pending:
        raise kopf.TemporaryError(
            f"{len(pending)} of {len(children)} rados namespace(s) in pool {name} not settled",
            delay=min(pending),
        )
    return {"reconciled": len(children)}


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    kopf.run(clusterwide=True, standalone=True)


if __name__ == "__main__":
    main()
