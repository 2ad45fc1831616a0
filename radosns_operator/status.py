"""
Status reporter — persists phase/info and conditions on the resource and
records the result of every reconcile pass.

Status writes are best effort: a failed write is logged and the next
reconcile pass rewrites it.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from prometheus_client import Counter, Gauge

from .interfaces import ResourceStore
from .models import ManagedNamespace, Phase, build_cluster_id
from .outcome import Outcome, OutcomeKind

CONDITION_DELETION_BLOCKED = "DeletionIsBlocked"
REASON_NAMESPACE_NOT_EMPTY = "RadosNamespaceNotEmpty"
REASON_NAMESPACE_EMPTY = "RadosNamespaceEmpty"

RECONCILE_TOTAL = Counter(
    "radosns_reconcile_total",
    "Reconcile passes by result",
    ["result"],
)
MIRROR_MONITORS = Gauge(
    "radosns_mirror_monitors",
    "Mirroring health monitors currently registered",
)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(conditions: list, ctype: str, status: str, reason: str, message: str):
    """Upsert a condition in a conditions list."""
    for c in conditions:
        if c.get("type") == ctype:
            if c.get("status") != status:
                c["lastTransitionTime"] = _now()
            c["status"] = status
            c["reason"] = reason
            c["message"] = message
            return
    conditions.append({
        "type": ctype,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": _now(),
    })


def deletion_blocked_condition(blocked: bool, message: str) -> dict:
    return {
        "type": CONDITION_DELETION_BLOCKED,
        "status": "True" if blocked else "False",
        "reason": REASON_NAMESPACE_NOT_EMPTY if blocked else REASON_NAMESPACE_EMPTY,
        "message": message,
    }


class StatusReporter:
    def __init__(
        self,
        store: ResourceStore,
        logger: Optional[logging.Logger] = None,
        cluster_id: Callable[[ManagedNamespace], str] = build_cluster_id,
    ) -> None:
        self._store = store
        self._log = logger or logging.getLogger("radosns-operator.status")
        self._cluster_id = cluster_id

    def update_phase(self, ns: ManagedNamespace, phase: Phase) -> None:
        """Set ``status.phase`` and ``status.info`` on the latest copy of ``ns``."""
        try:
            current = self._store.get_namespace(ns.namespace, ns.name)
        except Exception as e:
            self._log.warning(
                f"failed to retrieve rados namespace {ns.identity!r} to update status to {phase.value!r}. {e}"
            )
            return
        if current is None:
            self._log.debug(f"rados namespace {ns.identity!r} not found. Ignoring since object must be deleted.")
            return
        status = {"phase": phase.value, "info": {"clusterID": self._cluster_id(current)}}
        try:
            self._store.patch_status(current.namespace, current.name, status)
        except Exception as e:
            self._log.error(f"failed to set rados namespace {ns.identity!r} status to {phase.value!r}. {e}")
            return
        self._log.debug(f"rados namespace {ns.identity!r} status updated to {phase.value!r}")

    def update_condition(self, ns: ManagedNamespace, condition: dict) -> None:
        """Upsert one condition into ``status.conditions``."""
        try:
            current = self._store.get_namespace(ns.namespace, ns.name)
            if current is None:
                return
            conditions = []
            if current.status is not None:
                conditions = [c.model_dump() for c in current.status.conditions]
            set_condition(conditions, condition["type"], condition["status"],
                          condition["reason"], condition["message"])
            self._store.patch_status(current.namespace, current.name, {"conditions": conditions})
        except Exception as e:
            self._log.warning(
                f"failed to update {ns.identity!r} status with {condition['type']} condition: {e}"
            )

    def report_result(self, identity: str, outcome: Outcome) -> None:
        """Log and count the result of one reconcile pass."""
        RECONCILE_TOTAL.labels(result=outcome.kind.value).inc()
        if outcome.error is not None:
            self._log.error(f"failed to reconcile {identity!r}. {outcome.error}")
        elif outcome.kind is OutcomeKind.REQUEUE_AFTER:
            self._log.info(f"requeueing {identity!r} in {outcome.delay}s: {outcome.reason}")
        elif outcome.kind is OutcomeKind.REQUEUE_IMMEDIATE:
            self._log.info(f"requeueing {identity!r} immediately: {outcome.reason}")
        else:
            self._log.debug(f"successfully reconciled {identity!r}")

    def observe_monitors(self, count: int) -> None:
        MIRROR_MONITORS.set(count)
