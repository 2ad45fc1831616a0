"""
Operator settings. Every field can be overridden from the environment;
values are read once at import time.
"""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = _env_bool("IN_CLUSTER")
    OPERATOR_NAMESPACE: str = os.environ.get("OPERATOR_NAMESPACE", "rook-ceph")

    # CRDs
    CRD_GROUP: str = "ceph.rook.io"
    CRD_VERSION: str = "v1"
    CRD_PLURAL: str = "cephblockpoolradosnamespaces"
    POOL_PLURAL: str = "cephblockpools"
    CLUSTER_PLURAL: str = "cephclusters"

    # ceph-csi operator (ClientProfile)
    CSI_OP_GROUP: str = "csi.ceph.io"
    CSI_OP_VERSION: str = "v1alpha1"
    CSI_OP_CLIENT_PROFILE_PLURAL: str = "clientprofiles"
    ENABLE_CSI_OPERATOR: bool = _env_bool("ENABLE_CSI_OPERATOR")
    CSI_CONFIG_MAP: str = os.environ.get("CSI_CONFIG_MAP", "rook-ceph-csi-config")

    # Finalizer / annotations
    FINALIZER: str = "cephblockpoolradosnamespace.ceph.rook.io"
    FORCE_DELETE_ANNOTATION: str = "ceph.rook.io/force-deletion"

    # Backend (rbd CLI)
    RBD_BINARY: str = os.environ.get("RBD_BINARY", "rbd")
    CEPH_CONFIG_DIR: str = os.environ.get("CEPH_CONFIG_DIR", "/var/lib/rook")
    RBD_COMMAND_TIMEOUT: int = int(os.environ.get("RBD_COMMAND_TIMEOUT", "60"))

    # Mirroring health monitor
    MIRROR_MONITOR_INTERVAL: float = float(os.environ.get("MIRROR_MONITOR_INTERVAL", "60"))

    # Cleanup job
    CLEANUP_IMAGE: str = os.environ.get("CLEANUP_IMAGE", "rook/ceph:master")

    # Operator runtime
    MAX_WORKERS: int = int(os.environ.get("MAX_WORKERS", "5"))
    METRICS_PORT: int = int(os.environ.get("METRICS_PORT", "9090"))


settings = Settings()
