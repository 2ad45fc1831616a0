"""
Monitor registry — at most one mirroring health task per MonitorKey.

Lifecycle per key:
  Absent → Registered (handle created, not started)
         → Running   (one daemon thread bound to the handle's cancel event)
         → Absent    (cancel event set, entry removed)

Cancellation is cancel-and-forget: ``stop`` sets the handle's event and drops
the entry without joining the thread. A thread that has been asked to stop
but has not exited yet is no longer visible through the registry, so a later
``start`` for the same key launches a fresh task.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .models import MonitorKey

logger = logging.getLogger("radosns-operator.registry")

MonitorTarget = Callable[[threading.Event], None]


@dataclass
class MonitorHandle:
    key: MonitorKey
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started: bool = False
    thread: Optional[threading.Thread] = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class MonitorRegistry:
    """Lock-guarded table of monitor handles keyed by MonitorKey."""

    def __init__(self, stop_event: Optional[threading.Event] = None) -> None:
        # Process-wide lifetime; once set, no new monitor is launched
        self._stop_event = stop_event or threading.Event()
        self._handles: Dict[MonitorKey, MonitorHandle] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, key: MonitorKey) -> bool:
        with self._lock:
            return key in self._handles

    def keys(self) -> List[MonitorKey]:
        with self._lock:
            return list(self._handles)

    def get(self, key: MonitorKey) -> Optional[MonitorHandle]:
        with self._lock:
            return self._handles.get(key)

    def register(self, key: MonitorKey) -> MonitorHandle:
        """Return the handle for ``key``, creating it (not started) if absent."""
        with self._lock:
            return self._register_locked(key)

    def _register_locked(self, key: MonitorKey) -> MonitorHandle:
        handle = self._handles.get(key)
        if handle is None:
            handle = MonitorHandle(key=key)
            self._handles[key] = handle
            logger.debug(f"Registered mirror monitor {key}")
        return handle

    def is_running(self, key: MonitorKey) -> bool:
        with self._lock:
            handle = self._handles.get(key)
            return handle is not None and handle.started

    def start(self, key: MonitorKey, target: MonitorTarget) -> bool:
        """
        Launch ``target(cancel_event)`` in a daemon thread unless a task for
        ``key`` is already running. Returns True if a task was launched.
        """
        with self._lock:
            if self._stop_event.is_set():
                logger.info(f"Not starting mirror monitor {key}: operator is shutting down")
                return False
            handle = self._register_locked(key)
            if handle.started:
                logger.debug(f"Mirror monitor {key} already running")
                return False
            handle.thread = threading.Thread(
                target=target,
                args=(handle.cancel_event,),
                name=f"mirror-monitor-{key}",
                daemon=True,
            )
            handle.started = True
            handle.thread.start()
        logger.info(f"Started mirror monitor {key}")
        return True

    def stop(self, key: MonitorKey) -> bool:
        """Cancel and remove the monitor for ``key``. A no-op when absent."""
        with self._lock:
            handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        logger.info(f"Stopped mirror monitor {key}")
        return True

    def stop_all(self) -> int:
        """Cancel every monitor and refuse new ones. Used at process shutdown."""
        self._stop_event.set()
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.cancel()
        if handles:
            logger.info(f"Stopped {len(handles)} mirror monitor(s)")
        return len(handles)
