"""
Capability interfaces the reconcile engine depends on.

Kubernetes- and rbd-backed implementations live under ``services``; tests
use in-memory fakes.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from .models import (
    BlockPool,
    CephCluster,
    ClusterConfigEntry,
    ClusterInfo,
    ManagedNamespace,
    MirroredImage,
    MirroringInfo,
    MirroringStatus,
    SnapshotSchedule,
)
from .outcome import Outcome


class ResourceStore(Protocol):
    def get_namespace(self, namespace: str, name: str) -> Optional[ManagedNamespace]: ...

    def list_namespaces_by_index(self, namespace: str, index_key: str) -> List[ManagedNamespace]:
        """Records whose ``<pool>/<radosNamespace>`` equals ``index_key``."""

    def list_namespaces_for_pool(self, namespace: str, pool: str) -> List[ManagedNamespace]: ...

    def get_pool(self, namespace: str, name: str) -> Optional[BlockPool]: ...

    def update_finalizers(self, ns: ManagedNamespace, finalizers: List[str]) -> None: ...

    def patch_status(self, namespace: str, name: str, status: dict) -> bool:
        """Merge ``status`` into the record's status; False if the record is gone."""


class StorageBackend(Protocol):
    def create_namespace(self, cluster_info: ClusterInfo, pool: str, name: str) -> None: ...

    def delete_namespace(self, cluster_info: ClusterInfo, pool: str, name: str) -> None:
        """Raises NamespaceNotEmptyError while images or snapshots remain."""

    def get_mirroring_info(self, cluster_info: ClusterInfo, pool_path: str) -> MirroringInfo: ...

    def enable_mirroring(
        self, cluster_info: ClusterInfo, pool_path: str, remote_namespace: str, mode: str
    ) -> None: ...

    def disable_mirroring(self, cluster_info: ClusterInfo, pool_path: str) -> None: ...

    def list_mirrored_images(self, cluster_info: ClusterInfo, pool_path: str) -> List[MirroredImage]: ...

    def enable_snapshot_schedules(
        self, cluster_info: ClusterInfo, pool_path: str, schedules: Sequence[SnapshotSchedule]
    ) -> None: ...

    def get_mirroring_status(self, cluster_info: ClusterInfo, pool_path: str) -> MirroringStatus: ...


@dataclass(frozen=True)
class ClusterReadiness:
    cluster: Optional[CephCluster]
    ready: bool
    exists: bool
    outcome: Outcome


class ClusterGate(Protocol):
    def check(self, namespace: str) -> ClusterReadiness: ...

    def load_cluster_info(self, namespace: str, cluster: CephCluster) -> ClusterInfo: ...

    def ceph_version(self, cluster: CephCluster) -> str: ...


class ConfigProjection(Protocol):
    def save_cluster_config(
        self,
        cluster_id: str,
        scope_namespace: str,
        cluster_info: ClusterInfo,
        entry: Optional[ClusterConfigEntry],
    ) -> None:
        """Upsert ``entry`` under ``cluster_id``; ``None`` removes it."""


class CleanupJobLauncher(Protocol):
    def start_cleanup_job(
        self, ns: ManagedNamespace, cluster: CephCluster, config: Dict[str, str]
    ) -> None: ...


class ClientProfileRegistrar(Protocol):
    def create_or_update(
        self, cluster_info: ClusterInfo, rados_namespace: str, cluster_id: str, cluster_name: str
    ) -> None: ...
