"""Approval task manager.

Resolves who must act on a stage and materializes one ``ApprovalTask`` per
assignee. Sequential stages dispatch their planned assignees one at a time;
parallel stages dispatch all of them at once.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from docflow.engine.errors import ConfigurationError

from .audit import AuditEventType, AuditLog
from .collaborators import NotificationRequest, NotificationType, UserDirectory
from .models import (
    ApprovalMode,
    ApprovalTask,
    Department,
    DocumentOwner,
    Dynamic,
    ExecutionMode,
    FixedUsers,
    ManagerOf,
    ManagerOfAssignee,
    Role,
    StageInstance,
    StageTemplate,
    TaskOrigin,
    WorkflowInstance,
)
from .notifications import NotificationDispatcher
from .state_machine import OPEN_STAGE_STATUSES, TaskStatus
from .store import WorkflowStore

logger = logging.getLogger(__name__)


def _unique(user_ids: Iterable[object]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in user_ids:
        if not isinstance(raw, str):
            continue
        user_id = raw.strip()
        if user_id and user_id not in seen:
            seen.add(user_id)
            out.append(user_id)
    return out


class AssigneeResolver:
    def __init__(self, directory: UserDirectory) -> None:
        self._directory = directory

    def resolve_rule(
        self,
        rule: object,
        instance: WorkflowInstance,
        *,
        current_assignee: str | None = None,
    ) -> list[str]:
        """Resolve ``rule`` to a deduplicated list of user ids.

        Fixed user lists keep their configured order (it drives sequential
        dispatch); directory lookups are sorted for determinism.
        """

        org = instance.organization_id
        if isinstance(rule, FixedUsers):
            return _unique(rule.user_ids)
        if isinstance(rule, Role):
            return sorted(_unique(self._directory.users_with_role(org, rule.role)))
        if isinstance(rule, Department):
            return sorted(_unique(self._directory.department_members(org, rule.department_id)))
        if isinstance(rule, DocumentOwner):
            return _unique([instance.document.owner_id])
        if isinstance(rule, ManagerOf):
            return _unique([self._directory.manager_of(org, instance.document.owner_id)])
        if isinstance(rule, Dynamic):
            value = instance.evaluation_context().get(rule.field)
            values = value if isinstance(value, list | tuple) else [value]
            resolved = _unique(values)
            if not resolved and rule.default_user_id:
                resolved = [rule.default_user_id]
            return resolved
        if isinstance(rule, ManagerOfAssignee):
            if current_assignee is None:
                return []
            return _unique([self._directory.manager_of(org, current_assignee)])
        raise TypeError(f"Unsupported assignee rule: {type(rule).__name__}")


class TaskManager:
    def __init__(
        self,
        *,
        store: WorkflowStore,
        audit: AuditLog,
        resolver: AssigneeResolver,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self._store = store
        self._audit = audit
        self._resolver = resolver
        self._dispatcher = dispatcher

    def resolve_assignees(self, template: StageTemplate, instance: WorkflowInstance) -> list[str]:
        """Who must act on ``template``.

        An empty result is legal for ``any`` (the stage passes without
        decisions) and a configuration error for every other mode.
        """

        assignees = self._resolver.resolve_rule(template.assignees, instance)
        if not assignees and template.approval_mode is not ApprovalMode.ANY:
            raise ConfigurationError(
                f"Stage {template.name!r} uses approval mode "
                f"{template.approval_mode.value!r} but resolved no assignees"
            )
        return assignees

    def create_tasks(
        self,
        stage: StageInstance,
        template: StageTemplate,
        instance: WorkflowInstance,
        assignees: list[str],
    ) -> list[ApprovalTask]:
        """Create the stage's tasks. A stage that already has tasks is left alone."""

        if stage.due_at is None:
            raise ValueError(f"Stage instance {stage.id} has no due date; activate it first")
        first_wave = (
            assignees[:1] if template.execution_mode is ExecutionMode.SEQUENTIAL else assignees
        )
        tasks = [
            ApprovalTask(
                organization_id=instance.organization_id,
                instance_id=instance.id,
                stage_instance_id=stage.id,
                assignee_id=assignee,
                due_at=stage.due_at,
            )
            for assignee in first_wave
        ]
        created = self._store.add_initial_tasks(stage.id, tasks)
        if created is None:
            logger.debug(
                "Stage already has tasks; skipping creation",
                extra={"stage_instance_id": stage.id},
            )
            return []
        self._store.update_stage(
            stage.id,
            expected=OPEN_STAGE_STATUSES,
            planned_assignees=assignees,
            dispatched_count=len(created),
        )
        self._audit.append(
            instance.organization_id,
            AuditEventType.TASKS_CREATED,
            {
                "stage_instance_id": stage.id,
                "stage": template.name,
                "assignees": [t.assignee_id for t in created],
                "planned": assignees,
            },
            instance_id=instance.id,
        )
        for task in created:
            self.notify_assigned(task, template, NotificationType.APPROVAL_REQUEST)
        return created

    def dispatch_next(
        self, stage: StageInstance, template: StageTemplate, instance: WorkflowInstance
    ) -> ApprovalTask | None:
        """Sequential stages: hand the stage to the next planned assignee.

        Only happens once the stage has no pending task left; guarded on the
        dispatched counter so concurrent callers create at most one task.
        """

        if template.execution_mode is not ExecutionMode.SEQUENTIAL:
            return None
        if any(t.status is TaskStatus.PENDING for t in self._store.tasks_for_stage(stage.id)):
            return None
        index = stage.dispatched_count
        if index >= len(stage.planned_assignees) or stage.due_at is None:
            return None
        claimed = self._store.update_stage(
            stage.id,
            expected=OPEN_STAGE_STATUSES,
            when=lambda s: s.dispatched_count == index,
            dispatched_count=index + 1,
        )
        if claimed is None:
            return None
        task = ApprovalTask(
            organization_id=instance.organization_id,
            instance_id=instance.id,
            stage_instance_id=stage.id,
            assignee_id=stage.planned_assignees[index],
            due_at=claimed.due_at or stage.due_at,
        )
        self._store.add_tasks([task])
        self._audit.append(
            instance.organization_id,
            AuditEventType.TASKS_CREATED,
            {
                "stage_instance_id": stage.id,
                "stage": template.name,
                "assignees": [task.assignee_id],
            },
            instance_id=instance.id,
        )
        self.notify_assigned(task, template, NotificationType.APPROVAL_REQUEST)
        return task

    def create_replacement(
        self,
        original: ApprovalTask,
        *,
        assignee_id: str,
        due_at: datetime,
        origin: TaskOrigin,
    ) -> ApprovalTask:
        """Create the task that takes over from a delegated or escalated one."""

        replacement = ApprovalTask(
            organization_id=original.organization_id,
            instance_id=original.instance_id,
            stage_instance_id=original.stage_instance_id,
            assignee_id=assignee_id,
            origin=origin,
            due_at=due_at,
            replaces_task_id=original.id,
        )
        self._store.add_tasks([replacement])
        self._store.update_task(
            original.id,
            expected={TaskStatus.DELEGATED, TaskStatus.ESCALATED},
            replaced_by_task_id=replacement.id,
        )
        return replacement

    def expire_pending(
        self, tasks: Iterable[ApprovalTask], *, reason: str
    ) -> list[ApprovalTask]:
        expired: list[ApprovalTask] = []
        for task in tasks:
            if task.status is not TaskStatus.PENDING:
                continue
            updated = self._store.update_task(
                task.id, expected=TaskStatus.PENDING, status=TaskStatus.EXPIRED, comment=reason
            )
            if updated is not None:
                expired.append(updated)
        return expired

    def notify_assigned(
        self, task: ApprovalTask, template: StageTemplate, kind: NotificationType
    ) -> None:
        subject = {
            NotificationType.APPROVAL_REQUEST: f"Approval requested: {template.name}",
            NotificationType.ESCALATION: f"Escalated approval: {template.name}",
            NotificationType.REMINDER: f"Approval due soon: {template.name}",
        }.get(kind, template.name)
        self._dispatcher.send(
            NotificationRequest(
                recipient_id=task.assignee_id,
                organization_id=task.organization_id,
                type=kind,
                subject=subject,
                body=f"Due {task.due_at.isoformat()}",
                action_ref=task.id,
            ),
            instance_id=task.instance_id,
        )
