"""
Reconcile engine for CephBlockPoolRadosNamespace resources.

One pass walks an ordered ladder of guards; the first guard that decides the
pass returns its Outcome:

  1. record gone                      → no-op
  2. finalizer missing                → add it, requeue immediately
  3. cluster not ready                → cluster gone + deleting: drop finalizer
                                        otherwise: the cluster's wait directive
  4. load cluster info for this pass
  5. deleting                         → delete protocol
  6. external cluster                 → project config, Ready
  7. mirroring requested              → resolve ceph version
  8. parent pool missing / not ready  → error / short wait
  9. create or update the namespace
 10. project CSI config
 11. reconcile mirroring
 12. Ready (+ client profile)
 13. no-op

Safe to call repeatedly for the same identity; every backend call is
idempotent and the monitor registry refuses duplicate monitors.
"""
import logging
from typing import Callable, Optional

from . import finalizer
from .config import Settings, settings as default_settings
from .errors import (
    OPERATOR_NOT_INITIALIZED_MESSAGE,
    BackendError,
    NamespaceNotEmptyError,
    ReconcileError,
    is_not_initialized,
)
from .interfaces import (
    CleanupJobLauncher,
    ClientProfileRegistrar,
    ClusterGate,
    ConfigProjection,
    ResourceStore,
    StorageBackend,
)
from .mirroring import MirroringReconciler
from .models import (
    CephCluster,
    CephFSConfig,
    ClusterConfigEntry,
    ClusterInfo,
    ManagedNamespace,
    Phase,
    RbdConfig,
    ReadAffinityConfig,
    build_cluster_id,
)
from .monitor import MirrorChecker
from .outcome import (
    WAIT_FOR_FINALIZER_BLOCKED,
    WAIT_FOR_OPERATOR_INIT,
    WAIT_FOR_POOL,
    Outcome,
)
from .registry import MonitorRegistry
from .status import StatusReporter, deletion_blocked_condition

# Env vars consumed by the cleanup job
BLOCK_POOL_NAME_ENV = "BLOCK_POOL_NAME"
RADOS_NAMESPACE_ENV = "RADOS_NAMESPACE"


class ReconcileEngine:
    def __init__(
        self,
        store: ResourceStore,
        backend: StorageBackend,
        cluster_gate: ClusterGate,
        config_projection: ConfigProjection,
        cleanup_jobs: CleanupJobLauncher,
        client_profiles: Optional[ClientProfileRegistrar] = None,
        registry: Optional[MonitorRegistry] = None,
        settings: Settings = default_settings,
        logger: Optional[logging.Logger] = None,
        cluster_id: Callable[[ManagedNamespace], str] = build_cluster_id,
    ) -> None:
        self.store = store
        self.backend = backend
        self.cluster_gate = cluster_gate
        self.config_projection = config_projection
        self.cleanup_jobs = cleanup_jobs
        self.client_profiles = client_profiles
        self.registry = registry if registry is not None else MonitorRegistry()
        self.settings = settings
        self.log = logger or logging.getLogger("radosns-operator")
        self.cluster_id = cluster_id
        self.reporter = StatusReporter(store, self.log, cluster_id)
        self.mirroring = MirroringReconciler(backend, self.registry, self._new_checker, self.log)

    def _new_checker(self, ns: ManagedNamespace, cluster_info: ClusterInfo) -> MirrorChecker:
        return MirrorChecker.for_namespace(
            self.backend, self.store, cluster_info, ns, self.settings.MIRROR_MONITOR_INTERVAL
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> Outcome:
        """Run one pass for ``namespace/name``. Never raises; errors come back as Outcome."""
        identity = f"{namespace}/{name}"
        try:
            outcome = self._reconcile(namespace, name)
        except Exception as e:
            outcome = Outcome.failed(e)
        self.reporter.report_result(identity, outcome)
        self.reporter.observe_monitors(len(self.registry))
        return outcome

    def _reconcile(self, namespace: str, name: str) -> Outcome:
        identity = f"{namespace}/{name}"
        try:
            ns = self.store.get_namespace(namespace, name)
        except Exception as e:
            raise ReconcileError("failed to get cephBlockPoolRadosNamespace") from e
        if ns is None:
            self.log.debug(f"rados namespace {identity!r} not found. Ignoring since object must be deleted.")
            return Outcome.no_op()

        if not ns.is_being_deleted:
            try:
                added = finalizer.ensure_present(self.store, ns, self.settings.FINALIZER)
            except Exception as e:
                raise ReconcileError("failed to add finalizer") from e
            if added:
                self.log.info(f"reconciling the rados namespace {ns.name!r} after adding finalizer")
                return Outcome.requeue_immediate("finalizer added")

        if ns.status is None:
            self.reporter.update_phase(ns, Phase.PROGRESSING)

        readiness = self.cluster_gate.check(namespace)
        if not readiness.ready:
            if ns.is_being_deleted and not readiness.exists:
                # Cluster is gone, nothing left to clean up in the backend
                self.registry.stop(ns.monitor_key)
                try:
                    finalizer.remove(self.store, ns, self.settings.FINALIZER)
                except Exception as e:
                    return Outcome.requeue_immediate("finalizer removal failed", _wrap("failed to remove finalizer", e))
                return Outcome.no_op()
            return readiness.outcome

        cluster = readiness.cluster
        try:
            cluster_info = self.cluster_gate.load_cluster_info(namespace, cluster)
        except Exception as e:
            raise ReconcileError("failed to populate cluster info") from e

        if ns.is_being_deleted:
            return self._reconcile_delete(ns, cluster, cluster_info)

        if cluster.external:
            return self._reconcile_external(ns, cluster, cluster_info)

        # The ceph version only matters when mirroring is requested
        if ns.mirroring is not None:
            try:
                version = self.cluster_gate.ceph_version(cluster)
            except Exception as e:
                return Outcome.requeue_immediate(
                    "ceph version unavailable",
                    _wrap(f"failed to fetch ceph version from cephcluster {cluster.name!r} "
                          f"running in namespace {cluster.namespace!r}", e),
                )
            cluster_info = cluster_info.model_copy(update={"ceph_version": version})

        pool = self.store.get_pool(namespace, ns.pool)
        if pool is None:
            raise ReconcileError(
                f"failed to fetch ceph blockpool {ns.pool!r}, cannot create rados namespace {ns.name!r}"
            )
        if not pool.is_ready:
            self.log.info(f"ceph blockpool {ns.pool!r} is not ready, waiting to create rados namespace {ns.name!r}")
            return WAIT_FOR_POOL

        try:
            self._create_or_update(ns, cluster_info)
        except Exception as e:
            if is_not_initialized(e):
                self.log.info(OPERATOR_NOT_INITIALIZED_MESSAGE)
                return WAIT_FOR_OPERATOR_INIT
            self.reporter.update_phase(ns, Phase.FAILURE)
            raise ReconcileError(f"failed to create or update ceph pool rados namespace {ns.name!r}") from e

        self._update_cluster_config(ns, cluster, cluster_info)

        try:
            self.mirroring.reconcile(ns, pool, cluster_info)
        except Exception:
            self.reporter.update_phase(ns, Phase.FAILURE)
            raise

        self.reporter.update_phase(ns, Phase.READY)
        self._register_client_profile(ns, cluster, cluster_info)

        self.log.debug(f"done reconciling rados namespace {identity!r}")
        return Outcome.no_op()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _reconcile_external(self, ns: ManagedNamespace, cluster: CephCluster,
                            cluster_info: ClusterInfo) -> Outcome:
        self.log.debug(
            "skip creating external radosnamespace in external mode, create it manually, "
            "the controller will assume it's there"
        )
        self._update_cluster_config(ns, cluster, cluster_info)
        self.reporter.update_phase(ns, Phase.READY)
        self._register_client_profile(ns, cluster, cluster_info)
        return Outcome.no_op()

    def _reconcile_delete(self, ns: ManagedNamespace, cluster: CephCluster,
                          cluster_info: ClusterInfo) -> Outcome:
        if not ns.has_finalizer(self.settings.FINALIZER):
            self.log.debug(f"rados namespace {ns.identity!r} is being deleted without our finalizer, nothing to do")
            return Outcome.no_op()

        try:
            records = self.store.list_namespaces_by_index(cluster.namespace, ns.index_key)
        except Exception as e:
            raise ReconcileError("failed to list cephBlockPoolRadosNamespace") from e
        # Zero records (a concurrent delete raced us) counts as the last one
        last_record = len(records) <= 1

        self.log.debug(f"delete rados namespace {ns.identity!r}")
        if cluster.external:
            self.log.warning(
                f"external rados namespace {ns.identity!r} deletion is not supported, delete it manually"
            )
        elif last_record:
            try:
                self._delete_rados_namespace(ns, cluster, cluster_info)
            except NamespaceNotEmptyError:
                if ns.force_delete_requested:
                    # The cleanup job is wiping the namespace
                    self.registry.stop(ns.monitor_key)
                self.log.info(f"deletion of rados namespace {ns.identity!r} is blocked until it is empty")
                return WAIT_FOR_FINALIZER_BLOCKED
            except ReconcileError:
                raise
            except Exception as e:
                if is_not_initialized(e):
                    self.log.info(OPERATOR_NOT_INITIALIZED_MESSAGE)
                    return WAIT_FOR_OPERATOR_INIT
                raise ReconcileError(f"failed to delete ceph blockpool rados namespace {ns.name!r}") from e
            self.registry.stop(ns.monitor_key)
        else:
            self.log.info(
                f"Removing finalizer from RNS CR {ns.name!r} without checking if the radosnamespace "
                f"contains any data since more than one RNS (count {len(records)}) contains the same "
                "blockPool and rados name"
            )

        if last_record:
            try:
                self.config_projection.save_cluster_config(
                    self.cluster_id(ns), cluster.namespace, cluster_info, None
                )
            except Exception as e:
                raise ReconcileError("failed to save cluster config") from e

        try:
            finalizer.remove(self.store, ns, self.settings.FINALIZER)
        except Exception as e:
            raise ReconcileError("failed to remove finalizer") from e
        return Outcome.no_op()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _create_or_update(self, ns: ManagedNamespace, cluster_info: ClusterInfo) -> None:
        self.log.info(f"creating ceph blockpool rados namespace {ns.identity!r}")
        if ns.is_implicit:
            self.log.info(
                f"can't create empty radosnamespace {ns.name!r} in the namespace {ns.namespace!r} "
                "as it is already present"
            )
            return
        self.backend.create_namespace(cluster_info, ns.pool, ns.rados_namespace)

    def _delete_rados_namespace(self, ns: ManagedNamespace, cluster: CephCluster,
                                cluster_info: ClusterInfo) -> None:
        """
        Delete the backend namespace, recording whether it still holds data.

        Raises NamespaceNotEmptyError while images or snapshots remain; when
        force deletion is requested a cleanup job is launched first.
        """
        self.log.info(f"deleting rados namespace {ns.identity!r}")
        if ns.is_implicit:
            self.log.info("no need to delete implicit radosnamespace")
            return

        contains_data = False
        delete_error: Optional[BackendError] = None
        try:
            self.backend.delete_namespace(cluster_info, ns.pool, ns.rados_namespace)
        except NamespaceNotEmptyError as e:
            contains_data = True
            delete_error = e
        except BackendError as e:
            delete_error = e

        if contains_data:
            condition = deletion_blocked_condition(
                True, f"rados namespace {ns.name!r} contains images or snapshots and cannot be deleted"
            )
        else:
            condition = deletion_blocked_condition(
                False, f"rados namespace {ns.name!r} is empty and can be deleted"
            )
        self.log.info(condition["message"])
        self.reporter.update_condition(ns, condition)

        if contains_data and ns.force_delete_requested:
            self._cleanup(ns, cluster)

        if delete_error is not None:
            raise delete_error
        self.log.info(f"deleted rados namespace {ns.identity!r}")

    def _cleanup(self, ns: ManagedNamespace, cluster: CephCluster) -> None:
        self.log.info(
            f"starting cleanup of the ceph resources for radosNamespace {ns.name!r} in namespace {ns.namespace!r}"
        )
        config = {
            BLOCK_POOL_NAME_ENV: ns.pool,
            RADOS_NAMESPACE_ENV: ns.rados_namespace,
        }
        try:
            self.cleanup_jobs.start_cleanup_job(ns, cluster, config)
        except Exception as e:
            raise ReconcileError(f"failed to create clean up job for rados namespace {ns.name!r}") from e

    def _update_cluster_config(self, ns: ManagedNamespace, cluster: CephCluster,
                               cluster_info: ClusterInfo) -> None:
        # Mon endpoint changes are pushed by the mon health checker, not here
        entry = ClusterConfigEntry(
            namespace=cluster_info.namespace,
            monitors=cluster_info.monitor_endpoints(cluster.require_msgr2),
            rbd=RbdConfig(radosNamespace=ns.rados_namespace, netNamespaceFilePath=""),
            cephFS=CephFSConfig(
                kernelMountOptions=cluster_info.csi.kernel_mount_options,
                fuseMountOptions=cluster_info.csi.fuse_mount_options,
            ),
            readAffinity=ReadAffinityConfig(
                enabled=cluster_info.csi.read_affinity_enabled,
                crushLocationLabels=cluster_info.csi.crush_location_labels,
            ),
        )
        try:
            self.config_projection.save_cluster_config(
                self.cluster_id(ns), cluster.namespace, cluster_info, entry
            )
        except Exception as e:
            raise ReconcileError("failed to save cluster config") from e

    def _register_client_profile(self, ns: ManagedNamespace, cluster: CephCluster,
                                 cluster_info: ClusterInfo) -> None:
        if not self.settings.ENABLE_CSI_OPERATOR or self.client_profiles is None:
            return
        try:
            self.client_profiles.create_or_update(
                cluster_info, ns.rados_namespace, self.cluster_id(ns), cluster.name
            )
        except Exception as e:
            raise ReconcileError("failed to create ceph csi-op config CR for RadosNamespace") from e


def _wrap(message: str, cause: BaseException) -> ReconcileError:
    err = ReconcileError(message)
    err.__cause__ = cause
    return err
