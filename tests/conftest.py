import threading
import time
from typing import Dict, List, Optional, Tuple

import pytest
from kubernetes.client import ApiException

from radosns_operator.config import Settings
from radosns_operator.engine import ReconcileEngine
from radosns_operator.errors import NamespaceNotEmptyError
from radosns_operator.interfaces import ClusterReadiness
from radosns_operator.models import (
    BlockPool,
    CephCluster,
    ClusterInfo,
    ManagedNamespace,
    MirroredImage,
    MirroringInfo,
    MirroringStatus,
)
from radosns_operator.outcome import WAIT_FOR_CLUSTER, Outcome, OutcomeKind
from radosns_operator.registry import MonitorRegistry

FINALIZER = Settings().FINALIZER


def make_rns(name="ns1", namespace="rook-ceph", pool="rbd", rados_namespace=None,
             mirroring=None, finalizers=None, deleting=False, annotations=None, status=None):
    spec = {"blockPoolName": pool}
    if rados_namespace is not None:
        spec["name"] = rados_namespace
    if mirroring is not None:
        spec["mirroring"] = mirroring
    meta = {
        "name": name,
        "namespace": namespace,
        "finalizers": list(finalizers or []),
        "annotations": dict(annotations or {}),
        "generation": 1,
        "resourceVersion": "1",
    }
    if deleting:
        meta["deletionTimestamp"] = "2026-10-18T00:00:00Z"
    item = {"metadata": meta, "spec": spec}
    if status is not None:
        item["status"] = status
    return item


def make_pool(name="rbd", namespace="rook-ceph", ready=True, mirroring=False, monitoring_disabled=False):
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "mirroring": {"enabled": mirroring},
            "statusCheck": {"mirror": {"disabled": monitoring_disabled}},
        },
        "status": {"phase": "Ready" if ready else "Progressing"},
    }


def wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeStore:
    """
    In-memory ResourceStore keeping raw custom-object dicts. Every write bumps
    the resourceVersion and a finalizer update from a stale copy gets a 409.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str], dict] = {}
        self.pools: Dict[Tuple[str, str], dict] = {}
        self.status_patches: List[Tuple[str, dict]] = []
        self.finalizer_updates = 0
        self.fail_finalizer_update = False
        self._lock = threading.Lock()

    def add(self, item: dict) -> dict:
        meta = item["metadata"]
        self.objects[(meta["namespace"], meta["name"])] = item
        return item

    def add_pool(self, item: dict) -> dict:
        meta = item["metadata"]
        self.pools[(meta["namespace"], meta["name"])] = item
        return item

    def raw(self, namespace, name) -> Optional[dict]:
        return self.objects.get((namespace, name))

    def get_namespace(self, namespace, name):
        with self._lock:
            item = self.objects.get((namespace, name))
            return ManagedNamespace.from_k8s(item) if item else None

    def list_namespaces_by_index(self, namespace, index_key):
        with self._lock:
            items = [i for (ns, _), i in self.objects.items() if ns == namespace]
        return [r for r in map(ManagedNamespace.from_k8s, items) if r.index_key == index_key]

    def list_namespaces_for_pool(self, namespace, pool):
        with self._lock:
            items = [i for (ns, _), i in self.objects.items() if ns == namespace]
        return [r for r in map(ManagedNamespace.from_k8s, items) if r.pool == pool]

    def get_pool(self, namespace, name):
        item = self.pools.get((namespace, name))
        return BlockPool.from_k8s(item) if item else None

    @staticmethod
    def _bump(item):
        meta = item["metadata"]
        meta["resourceVersion"] = str(int(meta.get("resourceVersion") or 0) + 1)

    def update_finalizers(self, ns: ManagedNamespace, finalizers):
        if self.fail_finalizer_update:
            raise RuntimeError("conflict")
        with self._lock:
            item = self.objects.get((ns.namespace, ns.name))
            if item is None:
                return
            if ns.resource_version and ns.resource_version != item["metadata"].get("resourceVersion"):
                raise ApiException(status=409, reason="Conflict")
            self.finalizer_updates += 1
            self._bump(item)
            item["metadata"]["finalizers"] = list(finalizers)
            # The API server drops a deleting object once its finalizers are gone
            if item["metadata"].get("deletionTimestamp") and not finalizers:
                del self.objects[(ns.namespace, ns.name)]

    def patch_status(self, namespace, name, status):
        with self._lock:
            item = self.objects.get((namespace, name))
            if item is None:
                return False
            current = item.setdefault("status", {})
            for key, value in status.items():
                if value is None:
                    current.pop(key, None)
                else:
                    current[key] = value
            self._bump(item)
            self.status_patches.append((name, dict(status)))
            return True

    def phase(self, namespace, name):
        item = self.objects.get((namespace, name))
        return (item or {}).get("status", {}).get("phase")

    def condition(self, namespace, name, ctype):
        item = self.objects.get((namespace, name)) or {}
        for c in item.get("status", {}).get("conditions", []):
            if c["type"] == ctype:
                return c
        return None


class FakeBackend:
    """In-memory StorageBackend recording every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.namespaces = set()
        self.effective_creates = 0
        self.with_data = set()
        self.modes: Dict[str, str] = {}
        self.images: Dict[str, List[MirroredImage]] = {}
        self.schedules: Dict[str, list] = {}
        self.errors: Dict[str, Exception] = {}
        self._lock = threading.Lock()

    def _record(self, op, *args):
        with self._lock:
            self.calls.append((op,) + args)
        if op in self.errors:
            raise self.errors[op]

    def ops(self, op):
        with self._lock:
            return [c for c in self.calls if c[0] == op]

    def create_namespace(self, cluster_info, pool, name):
        self._record("create_namespace", pool, name)
        if (pool, name) not in self.namespaces:
            self.namespaces.add((pool, name))
            self.effective_creates += 1

    def delete_namespace(self, cluster_info, pool, name):
        self._record("delete_namespace", pool, name)
        if (pool, name) in self.with_data:
            raise NamespaceNotEmptyError(f"rados namespace {pool}/{name} contains images")
        self.namespaces.discard((pool, name))

    def get_mirroring_info(self, cluster_info, pool_path):
        self._record("get_mirroring_info", pool_path)
        return MirroringInfo(mode=self.modes.get(pool_path, "disabled"))

    def enable_mirroring(self, cluster_info, pool_path, remote_namespace, mode):
        self._record("enable_mirroring", pool_path, remote_namespace, mode)
        self.modes[pool_path] = mode

    def disable_mirroring(self, cluster_info, pool_path):
        self._record("disable_mirroring", pool_path)
        self.modes[pool_path] = "disabled"

    def list_mirrored_images(self, cluster_info, pool_path):
        self._record("list_mirrored_images", pool_path)
        return list(self.images.get(pool_path, []))

    def enable_snapshot_schedules(self, cluster_info, pool_path, schedules):
        self._record("enable_snapshot_schedules", pool_path, list(schedules))
        self.schedules[pool_path] = list(schedules)

    def get_mirroring_status(self, cluster_info, pool_path):
        self._record("get_mirroring_status", pool_path)
        return MirroringStatus(summary={"health": "OK"}, images=self.images.get(pool_path, []))

    def mutating_calls(self):
        mutating = {"create_namespace", "delete_namespace", "enable_mirroring", "disable_mirroring"}
        return [c for c in self.calls if c[0] in mutating]


class FakeClusterGate:
    def __init__(self, namespace="rook-ceph"):
        self.cluster = CephCluster(name="my-cluster", namespace=namespace, ceph_version="19.2.0",
                                   ceph_health="HEALTH_OK")
        self.ready = True
        self.exists = True
        self.outcome = WAIT_FOR_CLUSTER
        self.version_error: Optional[Exception] = None

    def check(self, namespace):
        if not self.ready:
            return ClusterReadiness(cluster=self.cluster if self.exists else None,
                                    ready=False, exists=self.exists, outcome=self.outcome)
        return ClusterReadiness(cluster=self.cluster, ready=True, exists=True, outcome=Outcome.no_op())

    def load_cluster_info(self, namespace, cluster):
        return ClusterInfo(namespace=namespace, monitors={"a": "10.0.0.1:6789", "b": "10.0.0.2:6789"},
                           csi=cluster.csi)

    def ceph_version(self, cluster):
        if self.version_error is not None:
            raise self.version_error
        return cluster.ceph_version


class FakeConfigProjection:
    def __init__(self):
        self.entries: Dict[str, object] = {}
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    def save_cluster_config(self, cluster_id, scope_namespace, cluster_info, entry):
        self.calls.append((cluster_id, scope_namespace, entry))
        if self.error is not None:
            raise self.error
        if entry is None:
            self.entries.pop(cluster_id, None)
        else:
            self.entries[cluster_id] = entry


class FakeCleanupJobs:
    def __init__(self):
        self.jobs: List[tuple] = []
        self.error: Optional[Exception] = None

    def start_cleanup_job(self, ns, cluster, config):
        if self.error is not None:
            raise self.error
        self.jobs.append((ns.name, dict(config)))


class FakeClientProfiles:
    def __init__(self):
        self.profiles: Dict[str, tuple] = {}
        self.error: Optional[Exception] = None

    def create_or_update(self, cluster_info, rados_namespace, cluster_id, cluster_name):
        if self.error is not None:
            raise self.error
        self.profiles[cluster_id] = (rados_namespace, cluster_name)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def gate():
    return FakeClusterGate()


@pytest.fixture
def projection():
    return FakeConfigProjection()


@pytest.fixture
def jobs():
    return FakeCleanupJobs()


@pytest.fixture
def profiles():
    return FakeClientProfiles()


@pytest.fixture
def registry():
    registry = MonitorRegistry()
    yield registry
    registry.stop_all()


@pytest.fixture
def test_settings():
    return Settings(MIRROR_MONITOR_INTERVAL=0.05, ENABLE_CSI_OPERATOR=False)


@pytest.fixture
def engine(store, backend, gate, projection, jobs, profiles, registry, test_settings):
    return ReconcileEngine(
        store=store,
        backend=backend,
        cluster_gate=gate,
        config_projection=projection,
        cleanup_jobs=jobs,
        client_profiles=profiles,
        registry=registry,
        settings=test_settings,
    )


def reconcile_until_settled(engine, namespace, name, passes=3):
    """Drive the engine past the finalizer requeue, like the dispatcher would."""
    outcome = None
    for _ in range(passes):
        outcome = engine.reconcile(namespace, name)
        if outcome.kind is not OutcomeKind.REQUEUE_IMMEDIATE:
            break
    return outcome

