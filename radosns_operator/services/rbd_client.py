"""
rbd CLI wrapper — the StorageBackend used in production.

Every call is safe to retry: "already exists" on create and "not found" on
delete count as success, and mirroring enable/disable are idempotent in rbd.
"""
import errno
import json
import logging
import os
import subprocess
from typing import List, Sequence

from ..config import settings
from ..errors import (
    UNINITIALIZED_CEPH_CONFIG_ERROR,
    BackendError,
    BackendNotInitializedError,
    NamespaceNotEmptyError,
)
from ..models import ClusterInfo, MirroredImage, MirroringInfo, MirroringStatus, SnapshotSchedule

logger = logging.getLogger("radosns-operator.rbd")

_BUSY_MARKERS = ("Device or resource busy", "EBUSY", "contains images")
_EXISTS_MARKERS = ("File exists", "EEXIST", "already exists")
_MISSING_MARKERS = ("No such file or directory", "ENOENT", "does not exist")


def _split_pool_path(pool_path: str) -> tuple[str, str]:
    pool, _, namespace = pool_path.partition("/")
    return pool, namespace


class RbdCliBackend:
    """StorageBackend implemented over the ``rbd`` command line tool."""

    def __init__(self, binary: str = settings.RBD_BINARY,
                 config_dir: str = settings.CEPH_CONFIG_DIR,
                 timeout: int = settings.RBD_COMMAND_TIMEOUT):
        self.binary = binary
        self.config_dir = config_dir
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Command runner
    # ------------------------------------------------------------------

    def _connection_args(self, cluster_info: ClusterInfo) -> List[str]:
        ns = cluster_info.namespace
        base = os.path.join(self.config_dir, ns)
        return [
            f"--cluster={ns}",
            f"--conf={os.path.join(base, ns + '.config')}",
            "--name=client.admin",
            f"--keyring={os.path.join(base, 'client.admin.keyring')}",
        ]

    def rbd_run(self, cluster_info: ClusterInfo, args: List[str]) -> subprocess.CompletedProcess:
        """Execute an rbd command. Raises BackendError on a non-zero exit."""
        cmd = [self.binary] + args + self._connection_args(cluster_info)
        logger.info(f"rbd> {' '.join([self.binary] + args)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise BackendError(f"rbd command timed out after {self.timeout}s", cmd) from e
        if result.stdout:
            logger.debug(f"rbd stdout: {result.stdout[:800]}")
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            message = f"rbd command failed (rc={result.returncode}): {stderr[:500]}"
            if UNINITIALIZED_CEPH_CONFIG_ERROR in stderr:
                raise BackendNotInitializedError(message, cmd, stderr)
            raise BackendError(message, cmd, stderr)
        return result

    def rbd_json(self, cluster_info: ClusterInfo, args: List[str]):
        result = self.rbd_run(cluster_info, args + ["--format", "json"])
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise BackendError(f"failed to parse rbd output: {e}", [self.binary] + args) from e

    @staticmethod
    def _matches(err: BackendError, code: int, markers: Sequence[str]) -> bool:
        if f"rc={code})" in str(err):
            return True
        return any(marker in err.stderr for marker in markers)

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    def create_namespace(self, cluster_info: ClusterInfo, pool: str, name: str) -> None:
        try:
            self.rbd_run(cluster_info, ["namespace", "create", f"{pool}/{name}"])
        except BackendNotInitializedError:
            raise
        except BackendError as e:
            if self._matches(e, errno.EEXIST, _EXISTS_MARKERS):
                logger.info(f"rados namespace {pool}/{name} already exists")
                return
            raise
        logger.info(f"rados namespace {pool}/{name} created")

    def delete_namespace(self, cluster_info: ClusterInfo, pool: str, name: str) -> None:
        try:
            self.rbd_run(cluster_info, ["namespace", "remove", f"{pool}/{name}"])
        except BackendNotInitializedError:
            raise
        except BackendError as e:
            if self._matches(e, errno.ENOENT, _MISSING_MARKERS):
                logger.info(f"rados namespace {pool}/{name} already gone")
                return
            if self._matches(e, errno.EBUSY, _BUSY_MARKERS):
                raise NamespaceNotEmptyError(
                    f"rados namespace {pool}/{name} contains images or snapshots", e.command, e.stderr
                ) from e
            raise
        logger.info(f"rados namespace {pool}/{name} removed")

    # ------------------------------------------------------------------
    # Mirroring
    # ------------------------------------------------------------------

    def get_mirroring_info(self, cluster_info: ClusterInfo, pool_path: str) -> MirroringInfo:
        data = self.rbd_json(cluster_info, ["mirror", "pool", "info", pool_path])
        return MirroringInfo(**data)

    def enable_mirroring(self, cluster_info: ClusterInfo, pool_path: str,
                         remote_namespace: str, mode: str) -> None:
        args = ["mirror", "pool", "enable", pool_path, mode]
        if remote_namespace:
            args += ["--remote-namespace", remote_namespace]
        self.rbd_run(cluster_info, args)
        logger.info(f"mirroring enabled for {pool_path} (mode={mode}, remote={remote_namespace or '-'})")

    def disable_mirroring(self, cluster_info: ClusterInfo, pool_path: str) -> None:
        self.rbd_run(cluster_info, ["mirror", "pool", "disable", pool_path])
        logger.info(f"mirroring disabled for {pool_path}")

    def get_mirroring_status(self, cluster_info: ClusterInfo, pool_path: str) -> MirroringStatus:
        data = self.rbd_json(cluster_info, ["mirror", "pool", "status", pool_path, "--verbose"])
        return MirroringStatus(
            summary=data.get("summary", {}),
            images=[MirroredImage(**image) for image in data.get("images") or []],
        )

    def list_mirrored_images(self, cluster_info: ClusterInfo, pool_path: str) -> List[MirroredImage]:
        return self.get_mirroring_status(cluster_info, pool_path).images

    def enable_snapshot_schedules(self, cluster_info: ClusterInfo, pool_path: str,
                                  schedules: Sequence[SnapshotSchedule]) -> None:
        pool, namespace = _split_pool_path(pool_path)
        for schedule in schedules:
            if not schedule.interval:
                continue
            args = ["mirror", "snapshot", "schedule", "add", "--pool", pool]
            if namespace:
                args += ["--namespace", namespace]
            args.append(schedule.interval)
            if schedule.startTime:
                args.append(schedule.startTime)
            try:
                self.rbd_run(cluster_info, args)
            except BackendNotInitializedError:
                raise
            except BackendError as e:
                if self._matches(e, errno.EEXIST, _EXISTS_MARKERS):
                    continue
                raise
            logger.info(f"snapshot schedule {schedule.interval} added for {pool_path}")
