"""
Kubernetes service layer — all K8s API interactions for the operator.

Design principles:
  - Idempotent: creates tolerate 409, reads map 404 to None
  - Fresh reads: nothing is cached between reconcile passes
  - Clean error handling: only 404/409 are translated, everything else raises
"""
import hashlib
import json
import logging
import threading
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client import ApiException

from ..config import Settings, settings as default_settings
from ..errors import OperatorError
from ..interfaces import ClusterReadiness
from ..models import (
    BlockPool,
    CephCluster,
    ClusterConfigEntry,
    ClusterInfo,
    ManagedNamespace,
)
from ..outcome import WAIT_FOR_CLUSTER, Outcome

logger = logging.getLogger("radosns-operator.kubernetes")

MON_ENDPOINTS_CONFIG_MAP = "rook-ceph-mon-endpoints"
CSI_CONFIG_KEY = "config.json"
JOB_NAME_MAX_LENGTH = 63

_k8s_loaded = False


def _ensure_k8s(settings: Settings = default_settings):
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if settings.IN_CLUSTER:
        config.load_incluster_config()
    else:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


def core_api() -> client.CoreV1Api:
    _ensure_k8s()
    return client.CoreV1Api()


def batch_api() -> client.BatchV1Api:
    _ensure_k8s()
    return client.BatchV1Api()


def custom_api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


# ---------------------------------------------------------------------------
# Resource store
# ---------------------------------------------------------------------------

class KubernetesResourceStore:
    """ResourceStore over the CephBlockPoolRadosNamespace and CephBlockPool CRDs."""

    def __init__(self, api: Optional[client.CustomObjectsApi] = None,
                 settings: Settings = default_settings):
        self._api = api
        self.settings = settings

    @property
    def api(self) -> client.CustomObjectsApi:
        if self._api is None:
            self._api = custom_api()
        return self._api

    def _get(self, namespace: str, plural: str, name: str) -> Optional[dict]:
        try:
            return self.api.get_namespaced_custom_object(
                self.settings.CRD_GROUP, self.settings.CRD_VERSION, namespace, plural, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def get_namespace(self, namespace: str, name: str) -> Optional[ManagedNamespace]:
        item = self._get(namespace, self.settings.CRD_PLURAL, name)
        return ManagedNamespace.from_k8s(item) if item else None

    def list_namespaces(self, namespace: str) -> List[ManagedNamespace]:
        result = self.api.list_namespaced_custom_object(
            self.settings.CRD_GROUP, self.settings.CRD_VERSION, namespace, self.settings.CRD_PLURAL
        )
        return [ManagedNamespace.from_k8s(item) for item in result.get("items", [])]

    def list_namespaces_by_index(self, namespace: str, index_key: str) -> List[ManagedNamespace]:
        return [ns for ns in self.list_namespaces(namespace) if ns.index_key == index_key]

    def list_namespaces_for_pool(self, namespace: str, pool: str) -> List[ManagedNamespace]:
        return [ns for ns in self.list_namespaces(namespace) if ns.pool == pool]

    def get_pool(self, namespace: str, name: str) -> Optional[BlockPool]:
        item = self._get(namespace, self.settings.POOL_PLURAL, name)
        return BlockPool.from_k8s(item) if item else None

    def update_finalizers(self, ns: ManagedNamespace, finalizers: List[str]) -> None:
        metadata = {"finalizers": finalizers}
        # Optimistic concurrency: a stale copy gets a 409 instead of clobbering
        if ns.resource_version:
            metadata["resourceVersion"] = ns.resource_version
        try:
            self.api.patch_namespaced_custom_object(
                self.settings.CRD_GROUP, self.settings.CRD_VERSION, ns.namespace,
                self.settings.CRD_PLURAL, ns.name, {"metadata": metadata},
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"{ns.identity} already gone while updating finalizers")
                return
            raise

    def patch_status(self, namespace: str, name: str, status: dict) -> bool:
        try:
            self.api.patch_namespaced_custom_object_status(
                self.settings.CRD_GROUP, self.settings.CRD_VERSION, namespace,
                self.settings.CRD_PLURAL, name, {"status": status},
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True


# ---------------------------------------------------------------------------
# Cluster gate
# ---------------------------------------------------------------------------

def parse_mon_endpoints(data: str) -> Dict[str, str]:
    """Parse ``a=10.0.0.1:6789,b=10.0.0.2:6789`` into a name → endpoint map."""
    monitors = {}
    for item in filter(None, (part.strip() for part in data.split(","))):
        name, sep, endpoint = item.partition("=")
        if not sep:
            logger.warning(f"ignoring malformed mon endpoint {item!r}")
            continue
        monitors[name] = endpoint
    return monitors


class KubernetesClusterGate:
    """Decides whether the CephCluster in a namespace can accept ceph commands."""

    def __init__(self, api: Optional[client.CustomObjectsApi] = None,
                 core: Optional[client.CoreV1Api] = None,
                 settings: Settings = default_settings):
        self._api = api
        self._core = core
        self.settings = settings

    @property
    def api(self) -> client.CustomObjectsApi:
        if self._api is None:
            self._api = custom_api()
        return self._api

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = core_api()
        return self._core

    def check(self, namespace: str) -> ClusterReadiness:
        result = self.api.list_namespaced_custom_object(
            self.settings.CRD_GROUP, self.settings.CRD_VERSION, namespace, self.settings.CLUSTER_PLURAL
        )
        items = result.get("items", [])
        if not items:
            logger.debug(f"no CephCluster in namespace {namespace!r}")
            return ClusterReadiness(cluster=None, ready=False, exists=False, outcome=WAIT_FOR_CLUSTER)
        if len(items) > 1:
            logger.warning(f"found {len(items)} CephClusters in namespace {namespace!r}, using the first")

        cluster = CephCluster.from_k8s(items[0])
        if cluster.is_being_deleted:
            logger.info(f"CephCluster {cluster.name!r} is being deleted")
            return ClusterReadiness(cluster=cluster, ready=False, exists=True, outcome=WAIT_FOR_CLUSTER)
        if not cluster.external and not cluster.ceph_health:
            logger.info(f"CephCluster {cluster.name!r} is not ready yet")
            return ClusterReadiness(cluster=cluster, ready=False, exists=True, outcome=WAIT_FOR_CLUSTER)
        return ClusterReadiness(cluster=cluster, ready=True, exists=True, outcome=Outcome.no_op())

    def load_cluster_info(self, namespace: str, cluster: CephCluster) -> ClusterInfo:
        try:
            cm = self.core.read_namespaced_config_map(MON_ENDPOINTS_CONFIG_MAP, namespace)
        except ApiException as e:
            if e.status == 404:
                raise OperatorError(
                    f"mon endpoints config map {MON_ENDPOINTS_CONFIG_MAP!r} not found in {namespace!r}"
                ) from e
            raise
        return ClusterInfo(
            namespace=namespace,
            monitors=parse_mon_endpoints((cm.data or {}).get("data", "")),
            ceph_version=cluster.ceph_version,
            csi=cluster.csi,
        )

    def ceph_version(self, cluster: CephCluster) -> str:
        if not cluster.ceph_version:
            raise OperatorError(f"ceph version not reported yet by cephcluster {cluster.name!r}")
        return cluster.ceph_version


# ---------------------------------------------------------------------------
# CSI config projection
# ---------------------------------------------------------------------------

class CsiConfigStore:
    """Writes cluster entries into the shared ceph-csi config map."""

    # Concurrent reconciles read-modify-write the same config map
    _lock = threading.Lock()

    def __init__(self, core: Optional[client.CoreV1Api] = None,
                 settings: Settings = default_settings):
        self._core = core
        self.settings = settings

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = core_api()
        return self._core

    def _read_entries(self) -> Optional[List[dict]]:
        try:
            cm = self.core.read_namespaced_config_map(
                self.settings.CSI_CONFIG_MAP, self.settings.OPERATOR_NAMESPACE
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        raw = (cm.data or {}).get(CSI_CONFIG_KEY) or "[]"
        return json.loads(raw)

    def save_cluster_config(self, cluster_id: str, scope_namespace: str,
                            cluster_info: ClusterInfo,
                            entry: Optional[ClusterConfigEntry]) -> None:
        with self._lock:
            entries = self._read_entries()
            exists = entries is not None
            entries = [e for e in (entries or []) if e.get("clusterID") != cluster_id]
            if entry is not None:
                entries.append(entry.model_copy(update={"clusterID": cluster_id}).model_dump())
            body = {"data": {CSI_CONFIG_KEY: json.dumps(entries)}}
            if exists:
                self.core.patch_namespaced_config_map(
                    self.settings.CSI_CONFIG_MAP, self.settings.OPERATOR_NAMESPACE, body
                )
            else:
                self.core.create_namespaced_config_map(
                    self.settings.OPERATOR_NAMESPACE,
                    client.V1ConfigMap(
                        metadata=client.V1ObjectMeta(name=self.settings.CSI_CONFIG_MAP),
                        data=body["data"],
                    ),
                )
        action = "cleared" if entry is None else "saved"
        logger.info(f"CSI config for cluster {cluster_id} ({scope_namespace}) {action}")


# ---------------------------------------------------------------------------
# Cleanup jobs
# ---------------------------------------------------------------------------

def cleanup_job_name(pool: str, name: str) -> str:
    """``cleanup-radosnamespace-<pool>-<name>``, hashed when over the DNS label limit."""
    prefix = "cleanup-radosnamespace-"
    suffix = f"{pool}-{name}"
    if len(prefix) + len(suffix) > JOB_NAME_MAX_LENGTH:
        suffix = hashlib.md5(suffix.encode("utf-8")).hexdigest()
    return prefix + suffix


class CleanupJobLauncher:
    def __init__(self, batch: Optional[client.BatchV1Api] = None,
                 settings: Settings = default_settings):
        self._batch = batch
        self.settings = settings

    @property
    def batch(self) -> client.BatchV1Api:
        if self._batch is None:
            self._batch = batch_api()
        return self._batch

    def start_cleanup_job(self, ns: ManagedNamespace, cluster: CephCluster,
                          config: Dict[str, str]) -> None:
        job_name = cleanup_job_name(ns.pool, ns.name)
        labels = {
            "app": "rook-ceph-cleanup",
            "app.kubernetes.io/managed-by": "radosns-operator",
            "ceph.rook.io/radosnamespace": ns.name,
        }
        env = [client.V1EnvVar(name=k, value=v) for k, v in sorted(config.items())]
        env.append(client.V1EnvVar(name="ROOK_CEPH_CLUSTER_NAMESPACE", value=cluster.namespace))
        job = client.V1Job(
            metadata=client.V1ObjectMeta(name=job_name, namespace=ns.namespace, labels=labels),
            spec=client.V1JobSpec(
                backoff_limit=3,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(
                        restart_policy="OnFailure",
                        containers=[
                            client.V1Container(
                                name="cleanup",
                                image=self.settings.CLEANUP_IMAGE,
                                args=["ceph", "clean", "CephBlockPoolRadosNamespace"],
                                env=env,
                            )
                        ],
                    ),
                ),
            ),
        )
        try:
            self.batch.create_namespaced_job(ns.namespace, job)
            logger.info(f"cleanup job {job_name} started for {ns.identity}")
        except ApiException as e:
            if e.status == 409:
                logger.info(f"cleanup job {job_name} already exists")
                return
            raise


# ---------------------------------------------------------------------------
# ceph-csi operator client profiles
# ---------------------------------------------------------------------------

class ClientProfileRegistrar:
    def __init__(self, api: Optional[client.CustomObjectsApi] = None,
                 settings: Settings = default_settings):
        self._api = api
        self.settings = settings

    @property
    def api(self) -> client.CustomObjectsApi:
        if self._api is None:
            self._api = custom_api()
        return self._api

    def create_or_update(self, cluster_info: ClusterInfo, rados_namespace: str,
                         cluster_id: str, cluster_name: str) -> None:
        s = self.settings
        spec = {
            "cephConnectionRef": {"name": cluster_name},
            "rbd": {"radosNamespace": rados_namespace},
        }
        try:
            self.api.get_namespaced_custom_object(
                s.CSI_OP_GROUP, s.CSI_OP_VERSION, cluster_info.namespace,
                s.CSI_OP_CLIENT_PROFILE_PLURAL, cluster_id,
            )
        except ApiException as e:
            if e.status != 404:
                raise
            body = {
                "apiVersion": f"{s.CSI_OP_GROUP}/{s.CSI_OP_VERSION}",
                "kind": "ClientProfile",
                "metadata": {"name": cluster_id, "namespace": cluster_info.namespace},
                "spec": spec,
            }
            self.api.create_namespaced_custom_object(
                s.CSI_OP_GROUP, s.CSI_OP_VERSION, cluster_info.namespace,
                s.CSI_OP_CLIENT_PROFILE_PLURAL, body,
            )
            logger.info(f"ClientProfile {cluster_id} created for rados namespace {rados_namespace!r}")
            return
        self.api.patch_namespaced_custom_object(
            s.CSI_OP_GROUP, s.CSI_OP_VERSION, cluster_info.namespace,
            s.CSI_OP_CLIENT_PROFILE_PLURAL, cluster_id, {"spec": spec},
        )
        logger.debug(f"ClientProfile {cluster_id} updated")
