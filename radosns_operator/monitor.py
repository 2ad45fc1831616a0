"""Background mirroring health checker for one rados namespace."""
import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from .interfaces import ResourceStore, StorageBackend
from .models import ClusterInfo, ManagedNamespace

LOG = logging.getLogger("radosns-operator.monitor")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class MirrorChecker:
    """Poll backend mirroring health and publish it on the resource status."""

    def __init__(
        self,
        backend: StorageBackend,
        store: ResourceStore,
        cluster_info: ClusterInfo,
        namespace: str,
        name: str,
        pool_path: str,
        interval: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._backend = backend
        self._store = store
        self._cluster_info = cluster_info
        self.namespace = namespace
        self.name = name
        self.pool_path = pool_path
        self._interval = interval
        self._log = logger or LOG

    @classmethod
    def for_namespace(cls, backend: StorageBackend, store: ResourceStore,
                      cluster_info: ClusterInfo, ns: ManagedNamespace,
                      interval: float) -> "MirrorChecker":
        return cls(backend, store, cluster_info, ns.namespace, ns.name, ns.pool_path, interval)

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.check()
            except Exception:
                self._log.exception(f"mirroring health check failed for {self.pool_path!r}")
            stop_event.wait(self._interval)
        self._log.debug(f"mirror monitor for {self.pool_path!r} exited")

    def check(self) -> bool:
        status = self._backend.get_mirroring_status(self._cluster_info, self.pool_path)
        info = self._backend.get_mirroring_info(self._cluster_info, self.pool_path)
        return self.update_status(
            {"summary": status.summary, "lastChecked": _now()},
            info.model_dump(),
        )

    def update_status(self, mirroring_status: Optional[dict], mirroring_info: Optional[dict]) -> bool:
        found = self._store.patch_status(
            self.namespace,
            self.name,
            {"mirroringStatus": mirroring_status, "mirroringInfo": mirroring_info},
        )
        if not found:
            self._log.debug(f"{self.namespace}/{self.name} not found, mirroring status not updated")
        return found

    def reset(self) -> bool:
        """Clear the mirroring fields once monitoring is suppressed."""
        return self.update_status(None, None)
