"""Workflow instance lifecycle.

The orchestrator is the only component that changes instance status. Stage
instances move strictly in template order: at most one is open (active or
escalated) at a time, and the next one is activated only after the previous
one reached ``completed`` or ``skipped``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from docflow.engine.errors import (
    ConfigurationError,
    Conflict,
    DefinitionInvalid,
    DependencyFailure,
    InvalidState,
)

from .actions import ActionResult, ActionRunner
from .audit import AuditEventType, AuditLog
from .bookkeeping import BookkeepingAdapter
from .collaborators import NotificationRequest, NotificationType
from .events import DocumentReadyEvent
from .models import (
    StageInstance,
    StageTemplate,
    WorkflowDefinition,
    WorkflowInstance,
    utc_now,
)
from .notifications import NotificationDispatcher
from .state_machine import (
    OPEN_STAGE_STATUSES,
    TERMINAL_STAGE_STATUSES,
    InstanceStatus,
    Outcome,
    StageStatus,
    TaskStatus,
)
from .store import WorkflowStore
from .tasks import TaskManager

logger = logging.getLogger(__name__)


def _results_payload(results: list[ActionResult]) -> list[dict[str, object]]:
    return [{"ok": r.ok, "message": r.message, "details": r.details} for r in results]


class InstanceOrchestrator:
    def __init__(
        self,
        *,
        store: WorkflowStore,
        audit: AuditLog,
        tasks: TaskManager,
        actions: ActionRunner,
        dispatcher: NotificationDispatcher,
        bookkeeping: BookkeepingAdapter | None = None,
        expire_unconsulted_tasks: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._tasks = tasks
        self._actions = actions
        self._dispatcher = dispatcher
        self._bookkeeping = bookkeeping
        self._expire_unconsulted = expire_unconsulted_tasks
        self._clock = clock

    # --- lifecycle -------------------------------------------------------

    def start(
        self, document: DocumentReadyEvent, definition: WorkflowDefinition
    ) -> WorkflowInstance:
        """Create the instance with one pending stage per template, then advance."""

        if not definition.stages:
            raise DefinitionInvalid(f"Workflow definition {definition.id} has no stages")

        instance = WorkflowInstance(
            organization_id=document.organization_id,
            document_id=document.document_id,
            definition_id=definition.id,
            definition_version=definition.version,
            document=document,
        )
        stages = [
            StageInstance(instance_id=instance.id, template_id=t.id, order=t.order)
            for t in definition.stages
        ]
        self._store.create_instance(instance, stages)
        self._audit.append(
            instance.organization_id,
            AuditEventType.WORKFLOW_STARTED,
            {
                "definition_id": definition.id,
                "definition_version": definition.version,
                "document_id": document.document_id,
                "document_type": document.document_type,
                "stage_count": len(stages),
            },
            instance_id=instance.id,
        )
        logger.info(
            "Workflow started",
            extra={
                "instance_id": instance.id,
                "definition_id": definition.id,
                "document_id": document.document_id,
            },
        )
        return self.advance(instance.id)

    def advance(self, instance_id: str) -> WorkflowInstance:
        """Move the instance to its next stage, or finish it.

        Pending stages whose entry predicate fails or whose skip predicate
        holds are skipped on the way. An open stage whose entry actions failed
        earlier gets them retried; any other open stage makes this a no-op.
        """

        while True:
            instance = self._store.get_instance(instance_id)
            if instance.is_terminal:
                return instance
            definition = self._store.get_definition(instance.definition_id)
            stages = self._store.stages_for_instance(instance_id)

            open_stage = next((s for s in stages if s.status in OPEN_STAGE_STATUSES), None)
            if open_stage is not None:
                if not open_stage.entry_actions_applied:
                    self._enter(instance, open_stage, definition.stage(open_stage.template_id))
                return self._store.get_instance(instance_id)

            pending = next((s for s in stages if s.status is StageStatus.PENDING), None)
            if pending is None:
                return self.complete(instance_id)

            template = definition.stage(pending.template_id)
            now = self._clock()
            if template.should_skip(instance.evaluation_context()):
                skipped = self._store.update_stage(
                    pending.id,
                    expected=StageStatus.PENDING,
                    status=StageStatus.SKIPPED,
                    completed_at=now,
                )
                if skipped is not None:
                    self._audit.append(
                        instance.organization_id,
                        AuditEventType.STAGE_SKIPPED,
                        {
                            "stage_instance_id": pending.id,
                            "stage": template.name,
                            "order": pending.order,
                        },
                        instance_id=instance_id,
                    )
                    self.recompute_progress(instance_id)
                continue

            activated = self._store.update_stage(
                pending.id,
                expected=StageStatus.PENDING,
                status=StageStatus.ACTIVE,
                activated_at=now,
                due_at=now + template.sla,
            )
            if activated is None:
                # Another caller activated a stage of this instance first.
                return self._store.get_instance(instance_id)
            self._store.update_instance(
                instance_id, expected=InstanceStatus.ACTIVE, current_stage_instance_id=activated.id
            )
            self._audit.append(
                instance.organization_id,
                AuditEventType.STAGE_ENTERED,
                {
                    "stage_instance_id": activated.id,
                    "stage": template.name,
                    "order": activated.order,
                    "due_at": activated.due_at,
                },
                instance_id=instance_id,
            )
            logger.info(
                "Stage entered",
                extra={"instance_id": instance_id, "stage_instance_id": activated.id},
            )
            self._enter(instance, activated, template)
            return self._store.get_instance(instance_id)

    def _enter(
        self, instance: WorkflowInstance, stage: StageInstance, template: StageTemplate
    ) -> None:
        try:
            results, updates = self._actions.run(template.on_enter, instance, strict=True)
        except DependencyFailure as e:
            logger.warning(
                "Stage entry actions failed; stage stays active",
                extra={"instance_id": instance.id, "stage_instance_id": stage.id},
            )
            self._audit.append(
                instance.organization_id,
                AuditEventType.STAGE_ENTRY_FAILED,
                {"stage_instance_id": stage.id, "dependency": e.dependency, "error": e.message},
                instance_id=instance.id,
            )
            return
        if updates:
            instance = self._store.merge_context(instance.id, updates) or instance

        if not template.requires_decisions:
            self._mark_entered(stage)
            self.on_stage_resolved(stage.id, Outcome.APPROVED)
            return

        try:
            assignees = self._tasks.resolve_assignees(template, instance)
        except ConfigurationError as e:
            self._fail(instance.id, e.message)
            raise
        if not assignees:
            self._mark_entered(stage)
            self.on_stage_resolved(stage.id, Outcome.APPROVED)
            return

        self._tasks.create_tasks(self._store.get_stage(stage.id), template, instance, assignees)
        self._mark_entered(stage)
        if results:
            logger.debug(
                "Stage entry actions applied",
                extra={"stage_instance_id": stage.id, "results": _results_payload(results)},
            )

    def _mark_entered(self, stage: StageInstance) -> None:
        self._store.update_stage(stage.id, expected=OPEN_STAGE_STATUSES, entry_actions_applied=True)

    def on_stage_resolved(self, stage_instance_id: str, outcome: Outcome) -> bool:
        """Close a stage with ``outcome`` and move the instance on.

        The open -> completed transition is the single point that lets a
        resolution through; a second resolution attempt returns False.
        """

        resolved = self._store.update_stage(
            stage_instance_id,
            expected=OPEN_STAGE_STATUSES,
            status=StageStatus.COMPLETED,
            outcome=outcome,
            completed_at=self._clock(),
        )
        if resolved is None:
            logger.debug(
                "Stage already resolved", extra={"stage_instance_id": stage_instance_id}
            )
            return False

        instance_id = resolved.instance_id
        if self._expire_unconsulted:
            self._tasks.expire_pending(
                self._store.tasks_for_stage(stage_instance_id), reason="stage resolved"
            )
        self._store.update_instance(
            instance_id,
            expected=InstanceStatus.ACTIVE,
            when=lambda i: i.current_stage_instance_id == stage_instance_id,
            current_stage_instance_id=None,
        )
        self._store.merge_context(instance_id, {f"stage_{resolved.order}_outcome": outcome.value})
        self.recompute_progress(instance_id)

        instance = self._store.get_instance(instance_id)
        template = self._store.get_definition(instance.definition_id).stage(resolved.template_id)
        actions = template.on_approve if outcome is Outcome.APPROVED else template.on_reject
        results, updates = self._actions.run(actions, instance, strict=False)
        if updates:
            self._store.merge_context(instance_id, updates)

        self._audit.append(
            instance.organization_id,
            AuditEventType.STAGE_COMPLETED,
            {
                "stage_instance_id": stage_instance_id,
                "stage": template.name,
                "order": resolved.order,
                "outcome": outcome.value,
                "actions": _results_payload(results),
            },
            instance_id=instance_id,
        )
        logger.info(
            "Stage resolved",
            extra={
                "instance_id": instance_id,
                "stage_instance_id": stage_instance_id,
                "outcome": outcome.value,
            },
        )
        if outcome is Outcome.REJECTED:
            self.reject(instance_id)
        else:
            self.advance(instance_id)
        return True

    def recompute_progress(self, instance_id: str) -> int:
        stages = self._store.stages_for_instance(instance_id)
        done = sum(1 for s in stages if s.status in TERMINAL_STAGE_STATUSES)
        progress = (done * 100) // len(stages) if stages else 0
        self._store.update_instance(instance_id, expected=InstanceStatus.ACTIVE, progress=progress)
        return progress

    def complete(self, instance_id: str) -> WorkflowInstance:
        """Finish the instance as approved and create the bookkeeping entry if requested.

        A bookkeeping failure is audited and re-raised as DependencyFailure,
        but the instance stays completed/approved.
        """

        completed = self._store.update_instance(
            instance_id,
            expected=InstanceStatus.ACTIVE,
            status=InstanceStatus.COMPLETED,
            outcome=Outcome.APPROVED,
            progress=100,
            current_stage_instance_id=None,
            completed_at=self._clock(),
        )
        if completed is None:
            return self._store.get_instance(instance_id)
        definition = self._store.get_definition(completed.definition_id)

        failure: DependencyFailure | None = None
        if definition.creates_bookkeeping_entry:
            claimed = self._claim_entry_creation(instance_id)
            if claimed is not None:
                try:
                    self._create_entry(claimed, definition)
                except DependencyFailure as e:
                    failure = e

        final = self._store.get_instance(instance_id)
        self._audit.append(
            final.organization_id,
            AuditEventType.WORKFLOW_COMPLETED,
            {"outcome": Outcome.APPROVED.value, "bookkeeping_entry_id": final.bookkeeping_entry_id},
            instance_id=instance_id,
        )
        self._notify_owner(final, NotificationType.COMPLETED, "Document approved")
        logger.info("Workflow approved", extra={"instance_id": instance_id})
        if failure is not None:
            raise failure
        return final

    def reject(self, instance_id: str) -> WorkflowInstance:
        rejected = self._store.update_instance(
            instance_id,
            expected=InstanceStatus.ACTIVE,
            status=InstanceStatus.COMPLETED,
            outcome=Outcome.REJECTED,
            current_stage_instance_id=None,
            completed_at=self._clock(),
        )
        if rejected is None:
            return self._store.get_instance(instance_id)
        expired = self._expire_instance_tasks(instance_id, reason="workflow rejected")
        self._audit.append(
            rejected.organization_id,
            AuditEventType.WORKFLOW_COMPLETED,
            {"outcome": Outcome.REJECTED.value, "expired_task_ids": expired},
            instance_id=instance_id,
        )
        self._notify_owner(rejected, NotificationType.REJECTED, "Document rejected")
        logger.info("Workflow rejected", extra={"instance_id": instance_id})
        return self._store.get_instance(instance_id)

    def cancel(
        self, instance_id: str, reason: str, *, actor_id: str | None = None
    ) -> WorkflowInstance:
        instance = self._store.get_instance(instance_id)
        if instance.is_terminal:
            raise InvalidState(
                f"Workflow instance {instance_id} is already {instance.status.value}"
            )
        cancelled = self._store.update_instance(
            instance_id,
            expected=InstanceStatus.ACTIVE,
            status=InstanceStatus.CANCELLED,
            cancel_reason=reason,
            current_stage_instance_id=None,
            completed_at=self._clock(),
        )
        if cancelled is None:
            raise Conflict(f"Workflow instance {instance_id} changed state concurrently")
        expired = self._expire_instance_tasks(instance_id, reason="workflow cancelled")
        self._audit.append(
            cancelled.organization_id,
            AuditEventType.WORKFLOW_CANCELLED,
            {"reason": reason, "expired_task_ids": expired},
            actor_id=actor_id,
            instance_id=instance_id,
        )
        logger.info("Workflow cancelled", extra={"instance_id": instance_id})
        return self._store.get_instance(instance_id)

    def retry_bookkeeping_entry(self, instance_id: str) -> WorkflowInstance:
        instance = self._store.get_instance(instance_id)
        if (
            instance.status is not InstanceStatus.COMPLETED
            or instance.outcome is not Outcome.APPROVED
        ):
            raise InvalidState(f"Workflow instance {instance_id} is not completed/approved")
        definition = self._store.get_definition(instance.definition_id)
        if not definition.creates_bookkeeping_entry:
            raise InvalidState(f"Definition {definition.id} does not create bookkeeping entries")
        if instance.bookkeeping_entry_id is not None:
            return instance
        claimed = self._claim_entry_creation(instance_id)
        if claimed is None:
            current = self._store.get_instance(instance_id)
            if current.bookkeeping_entry_id is not None:
                return current
            raise Conflict(
                f"Bookkeeping entry creation for workflow instance {instance_id} is in progress"
            )
        self._create_entry(claimed, definition)
        return self._store.get_instance(instance_id)

    # --- helpers ---------------------------------------------------------

    def _claim_entry_creation(self, instance_id: str) -> WorkflowInstance | None:
        """Mark entry creation as started.

        Returns ``None`` when an entry already exists or another caller holds the claim.
        """

        return self._store.update_instance(
            instance_id,
            expected=InstanceStatus.COMPLETED,
            when=lambda i: i.bookkeeping_entry_id is None and i.bookkeeping_started_at is None,
            bookkeeping_started_at=self._clock(),
        )

    def _create_entry(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> str:
        try:
            if self._bookkeeping is None:
                raise DependencyFailure(
                    "No bookkeeping collaborator configured", dependency="bookkeeping"
                )
            entry_id = self._bookkeeping.create_entry(instance, definition)
        except DependencyFailure as e:
            self._store.update_instance(
                instance.id,
                expected=InstanceStatus.COMPLETED,
                bookkeeping_error=e.message,
                bookkeeping_started_at=None,
            )
            self._audit.append(
                instance.organization_id,
                AuditEventType.ENTRY_CREATION_FAILED,
                {"error": e.message, "entry_template_id": definition.entry_template_id},
                instance_id=instance.id,
            )
            logger.error(
                "Bookkeeping entry creation failed",
                extra={"instance_id": instance.id, "error": e.message},
            )
            raise

        stored = self._store.update_instance(
            instance.id,
            expected=InstanceStatus.COMPLETED,
            when=lambda i: i.bookkeeping_entry_id is None,
            bookkeeping_entry_id=entry_id,
            bookkeeping_error=None,
            bookkeeping_started_at=None,
        )
        if stored is None:
            raise Conflict(f"Workflow instance {instance.id} already has a bookkeeping entry")
        self._audit.append(
            instance.organization_id,
            AuditEventType.ENTRY_CREATED,
            {"entry_id": entry_id, "entry_template_id": definition.entry_template_id},
            instance_id=instance.id,
        )
        return entry_id

    def _fail(self, instance_id: str, reason: str) -> None:
        failed = self._store.update_instance(
            instance_id,
            expected=InstanceStatus.ACTIVE,
            status=InstanceStatus.FAILED,
            failure_reason=reason,
            completed_at=self._clock(),
        )
        if failed is None:
            return
        self._expire_instance_tasks(instance_id, reason="workflow failed")
        self._audit.append(
            failed.organization_id,
            AuditEventType.WORKFLOW_FAILED,
            {"reason": reason},
            instance_id=instance_id,
        )
        logger.error("Workflow failed", extra={"instance_id": instance_id, "reason": reason})

    def _expire_instance_tasks(self, instance_id: str, *, reason: str) -> list[str]:
        pending = self._store.tasks_for_instance(instance_id, status=TaskStatus.PENDING)
        return [t.id for t in self._tasks.expire_pending(pending, reason=reason)]

    def _notify_owner(
        self, instance: WorkflowInstance, kind: NotificationType, subject: str
    ) -> None:
        self._dispatcher.send(
            NotificationRequest(
                recipient_id=instance.document.owner_id,
                organization_id=instance.organization_id,
                type=kind,
                subject=subject,
                body=f"Document {instance.document_id}",
                action_ref=instance.id,
            ),
            instance_id=instance.id,
        )
