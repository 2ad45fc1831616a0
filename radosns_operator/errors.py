"""
Error taxonomy for the rados namespace operator.

Backend failures carry the failing command so operators can reproduce them;
the engine wraps every failure with the operation it was attempting.
"""
from typing import Optional, Sequence

# Emitted by ceph tooling when the cluster config file has not been written yet
UNINITIALIZED_CEPH_CONFIG_ERROR = "error calling conf_read_file"
OPERATOR_NOT_INITIALIZED_MESSAGE = "skipping reconcile since operator is still initializing"


class OperatorError(Exception):
    """Base class for all operator errors."""


class BackendError(OperatorError):
    """A storage backend command failed."""

    def __init__(self, message: str, command: Optional[Sequence[str]] = None, stderr: str = ""):
        super().__init__(message)
        self.command = list(command) if command else []
        self.stderr = stderr


class BackendNotInitializedError(BackendError):
    """The backend has no usable cluster config yet (transient)."""


class NamespaceNotEmptyError(BackendError):
    """The rados namespace still contains images or snapshots."""


class MirroringError(OperatorError):
    """Mirroring cannot be reconciled to the desired state."""


class ReconcileError(OperatorError):
    """A reconcile step failed; the cause is chained."""

    def __str__(self) -> str:
        message = super().__str__()
        if self.__cause__ is not None:
            return f"{message}: {self.__cause__}"
        return message


def is_not_initialized(err: BaseException) -> bool:
    """True for the distinguished 'backend not yet initialized' condition."""
    if isinstance(err, BackendNotInitializedError):
        return True
    cause = err.__cause__
    while cause is not None:
        if isinstance(cause, BackendNotInitializedError):
            return True
        cause = cause.__cause__
    return UNINITIALIZED_CEPH_CONFIG_ERROR in str(err)
