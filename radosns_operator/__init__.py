"""Kubernetes operator reconciling Ceph RBD rados namespaces."""

from .engine import ReconcileEngine
from .outcome import Outcome, OutcomeKind
from .registry import MonitorHandle, MonitorRegistry

__all__ = [
    "MonitorHandle",
    "MonitorRegistry",
    "Outcome",
    "OutcomeKind",
    "ReconcileEngine",
]
