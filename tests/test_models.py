import hashlib

import pytest

from radosns_operator.models import (
    BlockPool,
    CephCluster,
    ClusterInfo,
    ManagedNamespace,
    MirroringMode,
    Phase,
    build_cluster_id,
)

from .conftest import make_pool, make_rns


class TestManagedNamespace:
    def test_rados_namespace_defaults_to_resource_name(self):
        ns = ManagedNamespace.from_k8s(make_rns(name="tenant-a"))
        assert ns.rados_namespace == "tenant-a"
        assert not ns.is_implicit
        assert ns.pool_path == "rbd/tenant-a"
        assert ns.index_key == "rbd/tenant-a"

    def test_explicit_name_overrides_resource_name(self):
        ns = ManagedNamespace.from_k8s(make_rns(name="tenant-a", rados_namespace="shared"))
        assert ns.rados_namespace == "shared"
        assert ns.pool_path == "rbd/shared"

    def test_empty_name_selects_implicit_namespace(self):
        ns = ManagedNamespace.from_k8s(make_rns(name="tenant-a", rados_namespace=""))
        assert ns.is_implicit
        assert ns.pool_path == "rbd"
        assert ns.index_key == "rbd/"

    def test_monitor_key(self):
        ns = ManagedNamespace.from_k8s(make_rns(name="ns1", namespace="ns1"))
        assert str(ns.monitor_key) == "ns1/rbd/ns1"

    def test_mirroring_spec(self):
        ns = ManagedNamespace.from_k8s(make_rns(mirroring={
            "remoteNamespace": "ns1-r",
            "mode": "image",
            "snapshotSchedules": [{"interval": "1h"}],
        }))
        assert ns.mirroring.remoteNamespace == "ns1-r"
        assert ns.mirroring.mode is MirroringMode.IMAGE
        assert ns.mirroring.snapshotSchedules[0].interval == "1h"

    def test_no_mirroring_spec(self):
        assert ManagedNamespace.from_k8s(make_rns()).mirroring is None

    def test_invalid_mirroring_mode_rejected(self):
        with pytest.raises(ValueError):
            ManagedNamespace.from_k8s(make_rns(mirroring={"mode": "bogus"}))

    def test_deletion_and_force_annotation(self):
        ns = ManagedNamespace.from_k8s(make_rns(
            deleting=True, annotations={"ceph.rook.io/force-deletion": "True"}
        ))
        assert ns.is_being_deleted
        assert ns.force_delete_requested

    def test_status_parsed(self):
        ns = ManagedNamespace.from_k8s(make_rns(status={"phase": "Ready", "info": {"clusterID": "x"}}))
        assert ns.status.phase is Phase.READY
        assert ns.status.info == {"clusterID": "x"}

    def test_missing_status(self):
        assert ManagedNamespace.from_k8s(make_rns()).status is None


def test_cluster_id_is_stable_md5():
    ns = ManagedNamespace.from_k8s(make_rns(name="ns1", namespace="rook-ceph"))
    expected = hashlib.md5(b"rook-ceph-rbd-block-ns1").hexdigest()
    assert build_cluster_id(ns) == expected
    assert build_cluster_id(ns) == build_cluster_id(ns.model_copy())


def test_cluster_id_differs_per_rados_namespace():
    a = ManagedNamespace.from_k8s(make_rns(name="a"))
    b = ManagedNamespace.from_k8s(make_rns(name="b"))
    assert build_cluster_id(a) != build_cluster_id(b)


def test_block_pool_from_k8s():
    pool = BlockPool.from_k8s(make_pool(ready=True, mirroring=True, monitoring_disabled=True))
    assert pool.is_ready
    assert pool.mirroring_enabled
    assert pool.mirror_monitoring_disabled
    assert not BlockPool.from_k8s(make_pool(ready=False)).is_ready


def test_ceph_cluster_from_k8s():
    cluster = CephCluster.from_k8s({
        "metadata": {"name": "my-cluster", "namespace": "rook-ceph"},
        "spec": {
            "external": {"enable": True},
            "network": {"connections": {"requireMsgr2": True}},
            "csi": {"readAffinity": {"enabled": True, "crushLocationLabels": ["zone"]}},
        },
        "status": {"version": {"version": "19.2.0"}, "ceph": {"health": "HEALTH_OK"}},
    })
    assert cluster.external
    assert cluster.require_msgr2
    assert cluster.ceph_version == "19.2.0"
    assert cluster.ceph_health == "HEALTH_OK"
    assert cluster.csi.read_affinity_enabled
    assert cluster.csi.crush_location_labels == ["zone"]
    assert not cluster.is_being_deleted


def test_monitor_endpoints_msgr2():
    info = ClusterInfo(namespace="rook-ceph", monitors={"b": "10.0.0.2:6789", "a": "10.0.0.1:6789"})
    assert info.monitor_endpoints() == ["10.0.0.1:6789", "10.0.0.2:6789"]
    assert info.monitor_endpoints(require_msgr2=True) == ["10.0.0.1:3300", "10.0.0.2:3300"]
