"""Test doubles and helpers shared by the unit tests."""

from __future__ import annotations

import threading
import time

from docflow.engine.errors import DependencyFailure
from docflow.engine.service import WorkflowEngine
from docflow.engine.workflow.collaborators import (
    BookkeepingEntryRequest,
    NotificationRequest,
    NotificationType,
)
from docflow.engine.workflow.decisions import DecisionResult
from docflow.engine.workflow.events import ActorContext, DecisionSubmission
from docflow.engine.workflow.models import ApprovalTask
from docflow.engine.workflow.state_machine import Decision

ORG = "org-1"


class RecordingNotifier:
    """Collects notification intents; can be switched to fail."""

    def __init__(self) -> None:
        self.sent: list[NotificationRequest] = []
        self.fail = False
        self._lock = threading.Lock()

    def notify(self, request: NotificationRequest) -> None:
        if self.fail:
            raise ConnectionError("notification gateway down")
        with self._lock:
            self.sent.append(request)

    def to(
        self, recipient_id: str, kind: NotificationType | None = None
    ) -> list[NotificationRequest]:
        return [
            n
            for n in self.sent
            if n.recipient_id == recipient_id and (kind is None or n.type is kind)
        ]


class FakeBookkeeping:
    def __init__(self) -> None:
        self.requests: list[BookkeepingEntryRequest] = []
        self.fail = False
        self.delay = 0.0

    def create_entry(self, request: BookkeepingEntryRequest) -> str:
        if self.fail:
            raise DependencyFailure("ledger offline", dependency="bookkeeping")
        time.sleep(self.delay)
        self.requests.append(request)
        return f"entry-{len(self.requests)}"


def actor(user_id: str) -> ActorContext:
    return ActorContext(actor_id=user_id, ip_address="10.0.0.1", device_fingerprint="fp-test")


def fixed(*user_ids: str, **stage: object) -> dict[str, object]:
    """Raw stage config assigned to a fixed list of users."""
    return {"assignees": {"kind": "fixed_users", "user_ids": list(user_ids)}, **stage}


def pending_task(engine: WorkflowEngine, instance_id: str, assignee: str) -> ApprovalTask:
    (task,) = [t for t in engine.pending_tasks(instance_id) if t.assignee_id == assignee]
    return task


def decide(
    engine: WorkflowEngine,
    task: ApprovalTask,
    decision: Decision = Decision.APPROVED,
    **submission: object,
) -> DecisionResult:
    """Submit ``decision`` on ``task`` as its assignee."""
    return engine.decide(
        DecisionSubmission(task_id=task.id, decision=decision, **submission),
        actor(task.assignee_id),
    )
