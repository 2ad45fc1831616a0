"""
Pydantic models for the custom resources the operator reads and the
projections it writes.

Raw Kubernetes custom-object dicts are converted with the ``from_k8s``
constructors, the same way the API layer turns CRD dicts into response
models.
"""
import hashlib
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import settings


class Phase(str, Enum):
    PROGRESSING = "Progressing"
    READY = "Ready"
    FAILURE = "Failure"


class MirroringMode(str, Enum):
    DISABLED = "disabled"
    IMAGE = "image"
    POOL = "pool"


class Condition(BaseModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    lastTransitionTime: Optional[str] = None


class SnapshotSchedule(BaseModel):
    interval: str = ""
    startTime: str = ""


class MirroringSpec(BaseModel):
    """Desired mirroring for a rados namespace."""
    remoteNamespace: str = ""
    mode: MirroringMode = MirroringMode.IMAGE
    snapshotSchedules: List[SnapshotSchedule] = []


class NamespaceStatus(BaseModel):
    phase: Optional[Phase] = None
    info: Dict[str, str] = {}
    conditions: List[Condition] = []
    mirroringStatus: Optional[dict] = None
    mirroringInfo: Optional[dict] = None


class MonitorKey(BaseModel):
    """Identity of one mirroring monitor: (resource namespace, pool path)."""
    model_config = ConfigDict(frozen=True)

    namespace: str
    pool_path: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.pool_path}"


class ManagedNamespace(BaseModel):
    """A CephBlockPoolRadosNamespace as seen by the engine."""
    name: str
    namespace: str
    pool: str
    rados_namespace: str = ""
    mirroring: Optional[MirroringSpec] = None
    deletion_timestamp: Optional[str] = None
    finalizers: List[str] = []
    annotations: Dict[str, str] = {}
    generation: int = 0
    resource_version: Optional[str] = None
    status: Optional[NamespaceStatus] = None

    @classmethod
    def from_k8s(cls, item: dict) -> "ManagedNamespace":
        meta = item.get("metadata") or {}
        spec = item.get("spec") or {}
        status = item.get("status")
        # An explicit empty spec.name selects the pool's implicit namespace
        rados_namespace = spec["name"] if "name" in spec else meta["name"]
        mirroring = spec.get("mirroring")
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace", ""),
            pool=spec.get("blockPoolName", ""),
            rados_namespace=rados_namespace or "",
            mirroring=MirroringSpec(**mirroring) if mirroring is not None else None,
            deletion_timestamp=meta.get("deletionTimestamp"),
            finalizers=list(meta.get("finalizers") or []),
            annotations=dict(meta.get("annotations") or {}),
            generation=meta.get("generation", 0),
            resource_version=meta.get("resourceVersion"),
            status=NamespaceStatus(**status) if status else None,
        )

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def is_implicit(self) -> bool:
        return self.rados_namespace == ""

    @property
    def pool_path(self) -> str:
        """``pool`` for the implicit namespace, ``pool/namespace`` otherwise."""
        if self.is_implicit:
            return self.pool
        return f"{self.pool}/{self.rados_namespace}"

    @property
    def index_key(self) -> str:
        return f"{self.pool}/{self.rados_namespace}"

    @property
    def monitor_key(self) -> MonitorKey:
        return MonitorKey(namespace=self.namespace, pool_path=self.pool_path)

    @property
    def force_delete_requested(self) -> bool:
        return self.annotations.get(settings.FORCE_DELETE_ANNOTATION, "").lower() == "true"

    def has_finalizer(self, finalizer: str = settings.FINALIZER) -> bool:
        return finalizer in self.finalizers


def build_cluster_id(ns: ManagedNamespace) -> str:
    """Deterministic CSI cluster ID for a rados namespace."""
    raw = f"{ns.namespace}-{ns.pool}-block-{ns.rados_namespace}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


class BlockPool(BaseModel):
    """The parent CephBlockPool, reduced to what the engine gates on."""
    name: str
    namespace: str
    phase: Optional[str] = None
    mirroring_enabled: bool = False
    mirror_monitoring_disabled: bool = False

    @classmethod
    def from_k8s(cls, item: dict) -> "BlockPool":
        meta = item.get("metadata") or {}
        spec = item.get("spec") or {}
        mirror_check = spec.get("statusCheck", {}).get("mirror", {})
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace", ""),
            phase=(item.get("status") or {}).get("phase"),
            mirroring_enabled=bool(spec.get("mirroring", {}).get("enabled", False)),
            mirror_monitoring_disabled=bool(mirror_check.get("disabled", False)),
        )

    @property
    def is_ready(self) -> bool:
        return self.phase == Phase.READY.value


class CsiDriverOptions(BaseModel):
    kernel_mount_options: str = ""
    fuse_mount_options: str = ""
    read_affinity_enabled: bool = False
    crush_location_labels: List[str] = []


class CephCluster(BaseModel):
    """The CephCluster owning the namespace's pool."""
    name: str
    namespace: str
    external: bool = False
    require_msgr2: bool = False
    ceph_version: Optional[str] = None
    ceph_health: Optional[str] = None
    deletion_timestamp: Optional[str] = None
    csi: CsiDriverOptions = CsiDriverOptions()

    @classmethod
    def from_k8s(cls, item: dict) -> "CephCluster":
        meta = item.get("metadata") or {}
        spec = item.get("spec") or {}
        csi = spec.get("csi", {})
        read_affinity = csi.get("readAffinity", {})
        cephfs = csi.get("cephfs", {})
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace", ""),
            external=bool(spec.get("external", {}).get("enable", False)),
            require_msgr2=bool(
                spec.get("network", {}).get("connections", {}).get("requireMsgr2", False)
            ),
            ceph_version=(item.get("status") or {}).get("version", {}).get("version"),
            ceph_health=(item.get("status") or {}).get("ceph", {}).get("health"),
            deletion_timestamp=meta.get("deletionTimestamp"),
            csi=CsiDriverOptions(
                kernel_mount_options=cephfs.get("kernelMountOptions", ""),
                fuse_mount_options=cephfs.get("fuseMountOptions", ""),
                read_affinity_enabled=bool(read_affinity.get("enabled", False)),
                crush_location_labels=list(read_affinity.get("crushLocationLabels") or []),
            ),
        )

    @property
    def is_being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)


class ClusterInfo(BaseModel):
    """Connection info loaded fresh for each reconcile pass."""
    namespace: str
    monitors: Dict[str, str] = {}
    ceph_version: Optional[str] = None
    csi: CsiDriverOptions = CsiDriverOptions()

    def monitor_endpoints(self, require_msgr2: bool = False) -> List[str]:
        endpoints = []
        for name in sorted(self.monitors):
            endpoint = self.monitors[name]
            if require_msgr2:
                host = endpoint.rsplit(":", 1)[0]
                endpoint = f"{host}:3300"
            endpoints.append(endpoint)
        return endpoints


class RbdConfig(BaseModel):
    radosNamespace: str = ""
    netNamespaceFilePath: str = ""


class CephFSConfig(BaseModel):
    kernelMountOptions: str = ""
    fuseMountOptions: str = ""


class ReadAffinityConfig(BaseModel):
    enabled: bool = False
    crushLocationLabels: List[str] = []


class ClusterConfigEntry(BaseModel):
    """One entry of the CSI cluster config map consumed by ceph-csi."""
    clusterID: str = ""
    namespace: str
    monitors: List[str] = []
    rbd: RbdConfig = RbdConfig()
    cephFS: CephFSConfig = CephFSConfig()
    readAffinity: ReadAffinityConfig = ReadAffinityConfig()


class MirroringInfo(BaseModel):
    mode: str = MirroringMode.DISABLED.value
    site_name: str = ""
    peers: List[dict] = []


class MirroredImage(BaseModel):
    name: str
    global_id: str = ""
    state: str = ""
    description: str = ""


class MirroringStatus(BaseModel):
    summary: dict = {}
    images: List[MirroredImage] = Field(default_factory=list)
