"""Escalation sweep.

Run periodically, independent of actor input. Every mutation is a guarded
transition, so overlapping sweeps (another replica, a slow previous run)
escalate each overdue task at most once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .audit import AuditEventType, AuditLog
from .collaborators import NotificationType
from .models import ApprovalTask, StageTemplate, TaskOrigin, WorkflowInstance, utc_now
from .state_machine import OPEN_STAGE_STATUSES, InstanceStatus, TaskStatus
from .store import WorkflowStore
from .tasks import AssigneeResolver, TaskManager

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    escalated: list[str] = field(default_factory=list)
    replacements: list[str] = field(default_factory=list)
    stalled: list[str] = field(default_factory=list)
    reminded: list[str] = field(default_factory=list)


class EscalationScheduler:
    def __init__(
        self,
        *,
        store: WorkflowStore,
        audit: AuditLog,
        tasks: TaskManager,
        resolver: AssigneeResolver,
        reminder_lead: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._tasks = tasks
        self._resolver = resolver
        self._reminder_lead = reminder_lead
        self._clock = clock

    def sweep(self, now: datetime | None = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport()
        for task in self._store.tasks_with_status(TaskStatus.PENDING, due_before=now):
            self._escalate(task, now, report)
        if self._reminder_lead > timedelta(0):
            self._remind(now, report)
        if report.escalated or report.reminded:
            logger.info(
                "Escalation sweep finished",
                extra={
                    "escalated": len(report.escalated),
                    "stalled": len(report.stalled),
                    "reminded": len(report.reminded),
                },
            )
        return report

    def _context(self, task: ApprovalTask) -> tuple[WorkflowInstance, StageTemplate] | None:
        instance = self._store.get_instance(task.instance_id)
        if instance.status is not InstanceStatus.ACTIVE:
            return None
        stage = self._store.get_stage(task.stage_instance_id)
        if stage.status not in OPEN_STAGE_STATUSES:
            return None
        template = self._store.get_definition(instance.definition_id).stage(stage.template_id)
        return instance, template

    def _escalate(self, task: ApprovalTask, now: datetime, report: SweepReport) -> None:
        context = self._context(task)
        if context is None:
            return
        instance, template = context

        escalated = self._store.update_task(
            task.id, expected=TaskStatus.PENDING, status=TaskStatus.ESCALATED
        )
        if escalated is None:
            # Decided, delegated or escalated by someone else in the meantime.
            return
        report.escalated.append(task.id)
        stage = self._store.escalate_stage(task.stage_instance_id)
        escalation_count = stage.escalation_count if stage is not None else None

        target = self._escalation_target(template, instance, task.assignee_id)
        replacement: ApprovalTask | None = None
        if target is not None:
            replacement = self._tasks.create_replacement(
                escalated,
                assignee_id=target,
                due_at=now + template.sla,
                origin=TaskOrigin.ESCALATION,
            )
            report.replacements.append(replacement.id)
            self._tasks.notify_assigned(replacement, template, NotificationType.ESCALATION)
        else:
            report.stalled.append(task.id)
            logger.warning(
                "No escalation target; stage is stalled",
                extra={"task_id": task.id, "instance_id": task.instance_id},
            )
        self._tasks.notify_assigned(escalated, template, NotificationType.ESCALATION)

        self._audit.append(
            task.organization_id,
            AuditEventType.ESCALATED,
            {
                "task_id": task.id,
                "stage_instance_id": task.stage_instance_id,
                "from": task.assignee_id,
                "to": target,
                "replacement_task_id": replacement.id if replacement else None,
                "escalation_count": escalation_count,
                "stalled": replacement is None,
            },
            instance_id=task.instance_id,
        )

    def _escalation_target(
        self, template: StageTemplate, instance: WorkflowInstance, assignee_id: str
    ) -> str | None:
        if template.escalation is None:
            return None
        candidates = self._resolver.resolve_rule(
            template.escalation, instance, current_assignee=assignee_id
        )
        return next((c for c in candidates if c != assignee_id), None)

    def _remind(self, now: datetime, report: SweepReport) -> None:
        horizon = now + self._reminder_lead
        for task in self._store.tasks_with_status(TaskStatus.PENDING, due_before=horizon):
            if task.due_at < now or task.reminder_sent_at is not None:
                continue
            context = self._context(task)
            if context is None:
                continue
            if self._store.claim_reminder(task.id, at=now) is None:
                continue
            _, template = context
            self._tasks.notify_assigned(task, template, NotificationType.REMINDER)
            self._audit.append(
                task.organization_id,
                AuditEventType.REMINDER_SENT,
                {"task_id": task.id, "assignee_id": task.assignee_id, "due_at": task.due_at},
                instance_id=task.instance_id,
            )
            report.reminded.append(task.id)

    def stalled_tasks(self, organization_id: str) -> list[ApprovalTask]:
        """Escalated tasks that never got a replacement, in still-active instances."""

        stalled = []
        for task in self._store.tasks_with_status(
            TaskStatus.ESCALATED, organization_id=organization_id
        ):
            if task.replaced_by_task_id is not None:
                continue
            if self._store.get_instance(task.instance_id).status is InstanceStatus.ACTIVE:
                stalled.append(task)
        return stalled
