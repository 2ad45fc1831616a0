"""
Finalizer protocol: the marker that keeps a record in the store until the
engine has finished backend cleanup.
"""
import logging

from .config import settings
from .interfaces import ResourceStore
from .models import ManagedNamespace

logger = logging.getLogger("radosns-operator.finalizer")


def ensure_present(store: ResourceStore, ns: ManagedNamespace,
                   finalizer: str = settings.FINALIZER) -> bool:
    """
    Add ``finalizer`` if missing. Returns True when the record was updated;
    the caller must requeue since its copy is now stale.
    """
    if ns.has_finalizer(finalizer):
        return False
    store.update_finalizers(ns, ns.finalizers + [finalizer])
    logger.info(f"Added finalizer {finalizer} to {ns.identity}")
    return True


def remove(store: ResourceStore, ns: ManagedNamespace,
           finalizer: str = settings.FINALIZER) -> bool:
    """
    Remove ``finalizer``; a no-op when it is already gone.

    Status writes earlier in the pass bump the resourceVersion, so the
    update goes out against a freshly read copy of the record.
    """
    current = store.get_namespace(ns.namespace, ns.name)
    if current is None or not current.has_finalizer(finalizer):
        return False
    store.update_finalizers(current, [f for f in current.finalizers if f != finalizer])
    logger.info(f"Removed finalizer {finalizer} from {ns.identity}")
    return True
