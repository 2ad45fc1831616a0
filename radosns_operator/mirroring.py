"""
Mirroring reconciliation for one rados namespace: enable or disable backend
mirroring and keep the health monitor in step with the desired state.
"""
import logging
from typing import Callable, Optional

from .errors import MirroringError, ReconcileError
from .interfaces import StorageBackend
from .models import BlockPool, ClusterInfo, ManagedNamespace, MirroringMode
from .monitor import MirrorChecker
from .registry import MonitorRegistry

CheckerFactory = Callable[[ManagedNamespace, ClusterInfo], MirrorChecker]


class MirroringReconciler:
    def __init__(
        self,
        backend: StorageBackend,
        registry: MonitorRegistry,
        checker_factory: CheckerFactory,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._checker_factory = checker_factory
        self._log = logger or logging.getLogger("radosns-operator.mirroring")

    def reconcile(self, ns: ManagedNamespace, pool: BlockPool, cluster_info: ClusterInfo) -> None:
        pool_path = ns.pool_path
        try:
            mirror_info = self._backend.get_mirroring_info(cluster_info, pool_path)
        except Exception as e:
            raise ReconcileError(f"failed to get mirroring info for the radosnamespace {pool_path!r}") from e

        key = ns.monitor_key
        checker = self._checker_factory(ns, cluster_info)

        if ns.mirroring is not None:
            self._enable(ns, pool, cluster_info)
            if not pool.mirror_monitoring_disabled:
                self._log.debug(f"starting mirror monitoring for radosnamespace {pool_path!r}")
                self._registry.register(key)
                self._registry.start(key, checker.run)
        elif mirror_info.mode != MirroringMode.DISABLED.value:
            self._disable(pool_path, mirror_info.mode, cluster_info)
            self._registry.stop(key)
        else:
            self._registry.stop(key)

        if pool.mirror_monitoring_disabled and self._registry.is_running(key):
            self._registry.stop(key)
            checker.reset()

    def _enable(self, ns: ManagedNamespace, pool: BlockPool, cluster_info: ClusterInfo) -> None:
        pool_path = ns.pool_path
        if not pool.mirroring_enabled:
            raise MirroringError(
                f"mirroring is disabled for block pool {pool.name!r}, "
                f"cannot enable mirroring for radosnamespace {pool_path!r}"
            )
        try:
            self._backend.enable_mirroring(
                cluster_info, pool_path, ns.mirroring.remoteNamespace, ns.mirroring.mode.value
            )
        except Exception as e:
            raise ReconcileError("failed to enable rbd rados namespace mirroring") from e
        try:
            self._backend.enable_snapshot_schedules(cluster_info, pool_path, ns.mirroring.snapshotSchedules)
        except Exception as e:
            raise ReconcileError(
                f"failed to enable snapshot scheduling for rbd rados namespace {pool_path!r}"
            ) from e

    def _disable(self, pool_path: str, mode: str, cluster_info: ClusterInfo) -> None:
        if mode == MirroringMode.IMAGE.value:
            try:
                images = self._backend.list_mirrored_images(cluster_info, pool_path)
            except Exception as e:
                raise ReconcileError(f"failed to list mirrored images for radosnamespace {pool_path!r}") from e
            if images:
                raise MirroringError(
                    f"there are images in the radosnamespace {pool_path!r}. "
                    "Please manually disable mirroring for each image"
                )
        try:
            self._backend.disable_mirroring(cluster_info, pool_path)
        except Exception as e:
            raise ReconcileError("failed to disable rbd rados namespace mirroring") from e
        self._log.info(f"disabled mirroring for radosnamespace {pool_path!r}")
