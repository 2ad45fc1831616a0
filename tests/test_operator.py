from types import SimpleNamespace
from unittest.mock import MagicMock

import kopf
import pytest

from radosns_operator import operator
from radosns_operator.errors import ReconcileError
from radosns_operator.outcome import WAIT_FOR_POOL, Outcome


def test_noop_returns_result():
    assert operator.apply_outcome({}, Outcome.no_op()) == {"result": "ok"}


def test_requeue_after_uses_delay():
    with pytest.raises(kopf.TemporaryError) as exc:
        operator.apply_outcome({}, WAIT_FOR_POOL)
    assert exc.value.delay == 10


def test_requeue_immediate():
    with pytest.raises(kopf.TemporaryError) as exc:
        operator.apply_outcome({}, Outcome.requeue_immediate("finalizer added"))
    assert exc.value.delay == operator.IMMEDIATE_RETRY_DELAY == 0


def test_error_posts_event_and_backs_off(monkeypatch):
    warn = MagicMock()
    monkeypatch.setattr(kopf, "warn", warn)

    with pytest.raises(kopf.TemporaryError) as exc:
        operator.apply_outcome({"metadata": {}}, Outcome.failed(ReconcileError("boom")))

    assert exc.value.delay == operator.ERROR_RETRY_DELAY
    assert warn.call_args.kwargs["reason"] == "ReconcileFailed"
    assert warn.call_args.kwargs["message"] == "boom"


def _pool_engine(monkeypatch, *outcomes):
    engine = MagicMock()
    engine.store.list_namespaces_for_pool.return_value = [
        SimpleNamespace(namespace="rook-ceph", name=f"ns{i}") for i in range(len(outcomes))
    ]
    engine.reconcile.side_effect = list(outcomes)
    monkeypatch.setattr(operator, "get_engine", lambda: engine)
    return engine


def test_block_pool_change_fans_out(monkeypatch):
    engine = _pool_engine(monkeypatch, Outcome.no_op(), Outcome.no_op())

    result = operator.on_block_pool_change(name="rbd", namespace="rook-ceph")

    assert result == {"reconciled": 2}
    engine.store.list_namespaces_for_pool.assert_called_once_with("rook-ceph", "rbd")
    assert [c.args for c in engine.reconcile.call_args_list] == [("rook-ceph", "ns0"), ("rook-ceph", "ns1")]


def test_block_pool_change_retries_failed_child(monkeypatch):
    engine = _pool_engine(monkeypatch, Outcome.no_op(), Outcome.failed(ReconcileError("x")))

    with pytest.raises(kopf.TemporaryError) as exc:
        operator.on_block_pool_change(name="rbd", namespace="rook-ceph")

    assert exc.value.delay == operator.ERROR_RETRY_DELAY
    assert engine.reconcile.call_count == 2


def test_block_pool_change_retries_after_shortest_delay(monkeypatch):
    _pool_engine(monkeypatch, Outcome.failed(ReconcileError("x")), WAIT_FOR_POOL, Outcome.no_op())

    with pytest.raises(kopf.TemporaryError) as exc:
        operator.on_block_pool_change(name="rbd", namespace="rook-ceph")

    assert exc.value.delay == 10


def test_block_pool_change_requeue_immediate(monkeypatch):
    _pool_engine(monkeypatch, WAIT_FOR_POOL, Outcome.requeue_immediate("finalizer added"))

    with pytest.raises(kopf.TemporaryError) as exc:
        operator.on_block_pool_change(name="rbd", namespace="rook-ceph")

    assert exc.value.delay == 0


def test_shutdown_stops_monitors(monkeypatch):
    engine = MagicMock()
    monkeypatch.setattr(operator, "_engine", engine)
    monkeypatch.setattr(operator, "_stop_event", MagicMock())

    operator.shutdown()

    engine.registry.stop_all.assert_called_once()
