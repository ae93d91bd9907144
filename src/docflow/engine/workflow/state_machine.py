from __future__ import annotations

from enum import Enum

from docflow.engine.errors import InvalidState


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StageStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ESCALATED = "escalated"


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    DELEGATED = "delegated"
    ESCALATED = "escalated"
    EXPIRED = "expired"


class Outcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"


INSTANCE_TRANSITIONS: dict[InstanceStatus, set[InstanceStatus]] = {
    InstanceStatus.ACTIVE: {
        InstanceStatus.COMPLETED,
        InstanceStatus.CANCELLED,
        InstanceStatus.FAILED,
    },
    InstanceStatus.COMPLETED: set(),
    InstanceStatus.CANCELLED: set(),
    InstanceStatus.FAILED: set(),
}

STAGE_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.ACTIVE, StageStatus.SKIPPED},
    StageStatus.ACTIVE: {StageStatus.COMPLETED, StageStatus.ESCALATED},
    StageStatus.ESCALATED: {StageStatus.COMPLETED, StageStatus.ESCALATED},
    StageStatus.COMPLETED: set(),
    StageStatus.SKIPPED: set(),
}

TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {
        TaskStatus.COMPLETED,
        TaskStatus.DELEGATED,
        TaskStatus.ESCALATED,
        TaskStatus.EXPIRED,
    },
    TaskStatus.COMPLETED: set(),
    TaskStatus.DELEGATED: set(),
    TaskStatus.ESCALATED: set(),
    TaskStatus.EXPIRED: set(),
}

TERMINAL_STAGE_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.SKIPPED})
OPEN_STAGE_STATUSES = frozenset({StageStatus.ACTIVE, StageStatus.ESCALATED})


class IllegalTransitionError(InvalidState):
    pass


def ensure_transition(table: dict[Enum, set[Enum]], current: Enum, to: Enum) -> None:
    # Self-transitions are allowed only where the table lists them (escalated -> escalated).
    allowed = table.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
