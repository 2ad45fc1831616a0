"""
Result of one reconcile pass.

The hosting process turns an Outcome into its own retry semantics; the
engine only decides which directive applies.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OutcomeKind(str, Enum):
    NO_OP = "no-op"
    REQUEUE_AFTER = "requeue-after"
    REQUEUE_IMMEDIATE = "requeue-immediate"
    ERROR = "error"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    delay: float = 0.0
    error: Optional[BaseException] = None
    reason: str = ""

    @classmethod
    def no_op(cls) -> "Outcome":
        return cls(OutcomeKind.NO_OP)

    @classmethod
    def requeue_after(cls, delay: float, reason: str = "") -> "Outcome":
        return cls(OutcomeKind.REQUEUE_AFTER, delay=delay, reason=reason)

    @classmethod
    def requeue_immediate(cls, reason: str = "", error: Optional[BaseException] = None) -> "Outcome":
        return cls(OutcomeKind.REQUEUE_IMMEDIATE, error=error, reason=reason)

    @classmethod
    def failed(cls, error: BaseException) -> "Outcome":
        return cls(OutcomeKind.ERROR, error=error, reason=str(error))

    @property
    def is_error(self) -> bool:
        return self.kind is OutcomeKind.ERROR


# Wait directives (seconds)
CLUSTER_NOT_READY_DELAY = 10
OPERATOR_NOT_INITIALIZED_DELAY = 10
FINALIZER_BLOCKED_DELAY = 10
POOL_NOT_READY_DELAY = 10

WAIT_FOR_CLUSTER = Outcome.requeue_after(CLUSTER_NOT_READY_DELAY, "ceph cluster not ready")
WAIT_FOR_OPERATOR_INIT = Outcome.requeue_after(OPERATOR_NOT_INITIALIZED_DELAY, "operator not initialized")
WAIT_FOR_FINALIZER_BLOCKED = Outcome.requeue_after(FINALIZER_BLOCKED_DELAY, "deletion blocked by data")
WAIT_FOR_POOL = Outcome.requeue_after(POOL_NOT_READY_DELAY, "block pool not ready")
