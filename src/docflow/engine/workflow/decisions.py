"""Decision processing and stage resolution.

A decision is one guarded task transition. Stage resolution is recomputed
from the full task set after every decision; advancing the workflow is
guarded again by the stage's open -> completed transition, so two decisions
racing on sibling tasks can both be recorded while only one of them moves
the workflow forward.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from fractions import Fraction
from typing import TYPE_CHECKING

from docflow.engine.errors import Conflict, InvalidDecision, InvalidState, NotFound

from .audit import AuditEventType, AuditLog
from .collaborators import NotificationType
from .events import ActorContext, DecisionSubmission
from .models import ApprovalMode, ApprovalTask, StageTemplate, TaskOrigin, utc_now
from .state_machine import OPEN_STAGE_STATUSES, Decision, InstanceStatus, Outcome, TaskStatus
from .store import WorkflowStore
from .tasks import TaskManager

if TYPE_CHECKING:
    from .orchestrator import InstanceOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StageTally:
    approvals: int
    rejections: int
    total: int

    @property
    def decided(self) -> int:
        return self.approvals + self.rejections

    @property
    def all_decided(self) -> bool:
        return self.decided >= self.total


def tally(tasks: Iterable[ApprovalTask], *, undispatched: int = 0) -> StageTally:
    """Count the decisions that resolve a stage.

    A task that was handed over (delegated, or escalated to a replacement)
    is represented by its replacement and not counted itself. An escalated
    task without a replacement still counts as undecided.
    """

    counted = [t for t in tasks if t.replaced_by_task_id is None]
    approvals = sum(1 for t in counted if t.decision is Decision.APPROVED)
    rejections = sum(1 for t in counted if t.decision is Decision.REJECTED)
    return StageTally(approvals=approvals, rejections=rejections, total=len(counted) + undispatched)


def resolve_stage(
    mode: ApprovalMode, counts: StageTally, *, threshold: float | None = None
) -> Outcome | None:
    if counts.total == 0:
        return Outcome.APPROVED if mode is ApprovalMode.ANY else None

    if mode is ApprovalMode.ANY:
        if counts.approvals >= 1:
            return Outcome.APPROVED
        return Outcome.REJECTED if counts.all_decided else None

    if mode is ApprovalMode.ALL:
        if counts.rejections >= 1:
            return Outcome.REJECTED
        return Outcome.APPROVED if counts.approvals == counts.total else None

    if not counts.all_decided:
        return None

    if mode is ApprovalMode.MAJORITY:
        return Outcome.APPROVED if counts.approvals > counts.rejections else Outcome.REJECTED

    if threshold is None:
        raise ValueError("threshold mode needs a threshold")
    ratio = Fraction(counts.approvals, counts.total)
    return Outcome.APPROVED if ratio >= Fraction(str(threshold)) else Outcome.REJECTED


@dataclass(frozen=True, slots=True)
class DecisionResult:
    task: ApprovalTask
    delegate_task: ApprovalTask | None = None
    stage_outcome: Outcome | None = None


class DecisionProcessor:
    def __init__(
        self,
        *,
        store: WorkflowStore,
        audit: AuditLog,
        tasks: TaskManager,
        orchestrator: InstanceOrchestrator,
    ) -> None:
        self._store = store
        self._audit = audit
        self._tasks = tasks
        self._orchestrator = orchestrator

    def decide(self, submission: DecisionSubmission, actor: ActorContext) -> DecisionResult:
        task = self._pending_task_for(submission.task_id, actor.actor_id)
        instance = self._store.get_instance(task.instance_id)
        if instance.status is not InstanceStatus.ACTIVE:
            raise InvalidState(f"Workflow instance {instance.id} is {instance.status.value}")

        if submission.decision is Decision.DELEGATED:
            return self._delegate(task, submission, actor)

        decided = self._store.update_task(
            task.id,
            expected=TaskStatus.PENDING,
            status=TaskStatus.COMPLETED,
            decision=submission.decision,
            comment=submission.comment,
            decided_by=actor.actor_id,
            decided_at=utc_now(),
            ip_address=actor.ip_address,
            device_fingerprint=actor.device_fingerprint,
        )
        if decided is None:
            raise Conflict(f"Task {task.id} was decided concurrently")

        self._audit.append(
            task.organization_id,
            AuditEventType.APPROVAL_COMPLETED,
            {
                "task_id": task.id,
                "stage_instance_id": task.stage_instance_id,
                "decision": submission.decision.value,
                "comment": submission.comment,
                "ip_address": actor.ip_address,
                "device_fingerprint": actor.device_fingerprint,
            },
            actor_id=actor.actor_id,
            instance_id=task.instance_id,
        )
        logger.info(
            "Decision recorded",
            extra={
                "task_id": task.id,
                "instance_id": task.instance_id,
                "decision": submission.decision.value,
            },
        )
        outcome = self.evaluate_stage(task.stage_instance_id)
        return DecisionResult(task=decided, stage_outcome=outcome)

    def _pending_task_for(self, task_id: str, actor_id: str) -> ApprovalTask:
        try:
            task = self._store.get_task(task_id)
        except NotFound:
            raise NotFound(f"No pending task {task_id} for actor {actor_id}") from None
        if task.assignee_id != actor_id:
            raise NotFound(f"No pending task {task_id} for actor {actor_id}")
        if task.status is not TaskStatus.PENDING:
            raise InvalidState(f"Task {task_id} is already {task.status.value}")
        return task

    def _delegate(
        self, task: ApprovalTask, submission: DecisionSubmission, actor: ActorContext
    ) -> DecisionResult:
        delegate = (submission.delegate_to or "").strip()
        if not delegate:
            raise InvalidDecision("Delegation requires a delegate")
        if delegate == task.assignee_id:
            raise InvalidDecision("A task cannot be delegated to its own assignee")

        delegated = self._store.update_task(
            task.id,
            expected=TaskStatus.PENDING,
            status=TaskStatus.DELEGATED,
            decision=Decision.DELEGATED,
            delegated_to=delegate,
            comment=submission.comment,
            decided_by=actor.actor_id,
            decided_at=utc_now(),
            ip_address=actor.ip_address,
            device_fingerprint=actor.device_fingerprint,
        )
        if delegated is None:
            raise Conflict(f"Task {task.id} changed before it could be delegated")

        replacement = self._tasks.create_replacement(
            delegated, assignee_id=delegate, due_at=task.due_at, origin=TaskOrigin.DELEGATION
        )
        self._audit.append(
            task.organization_id,
            AuditEventType.DELEGATED,
            {
                "task_id": task.id,
                "delegate_task_id": replacement.id,
                "from": task.assignee_id,
                "to": delegate,
                "comment": submission.comment,
            },
            actor_id=actor.actor_id,
            instance_id=task.instance_id,
        )
        template = self._template_for(task.stage_instance_id)
        self._tasks.notify_assigned(replacement, template, NotificationType.APPROVAL_REQUEST)
        return DecisionResult(task=self._store.get_task(task.id), delegate_task=replacement)

    def _template_for(self, stage_instance_id: str) -> StageTemplate:
        stage = self._store.get_stage(stage_instance_id)
        instance = self._store.get_instance(stage.instance_id)
        return self._store.get_definition(instance.definition_id).stage(stage.template_id)

    def evaluate_stage(self, stage_instance_id: str) -> Outcome | None:
        """Recompute the stage outcome and hand a resolved stage to the orchestrator."""

        stage = self._store.get_stage(stage_instance_id)
        if stage.status not in OPEN_STAGE_STATUSES:
            return stage.outcome
        instance = self._store.get_instance(stage.instance_id)
        template = self._store.get_definition(instance.definition_id).stage(stage.template_id)

        undispatched = max(len(stage.planned_assignees) - stage.dispatched_count, 0)
        counts = tally(self._store.tasks_for_stage(stage.id), undispatched=undispatched)
        outcome = resolve_stage(template.approval_mode, counts, threshold=template.threshold)
        if outcome is None:
            self._tasks.dispatch_next(stage, template, instance)
            return None
        self._orchestrator.on_stage_resolved(stage.id, outcome)
        return outcome
