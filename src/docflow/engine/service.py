"""Engine facade.

Wires the store, the audit log and the external collaborators into the
workflow components, and exposes the operations callers need.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from datetime import datetime

from docflow.engine.config import EngineSettings
from docflow.engine.errors import InstanceAlreadyExists
from docflow.engine.runner import EscalationRunner
from docflow.engine.workflow.actions import ActionRunner
from docflow.engine.workflow.audit import AuditEventType, AuditLog, AuditPage, AuditVerification
from docflow.engine.workflow.bookkeeping import BookkeepingAdapter
from docflow.engine.workflow.collaborators import BookkeepingEntryCreator, Notifier, UserDirectory
from docflow.engine.workflow.decisions import DecisionProcessor, DecisionResult
from docflow.engine.workflow.escalation import EscalationScheduler, SweepReport
from docflow.engine.workflow.events import ActorContext, DecisionSubmission, DocumentReadyEvent
from docflow.engine.workflow.models import ApprovalTask, WorkflowDefinition, WorkflowInstance
from docflow.engine.workflow.notifications import NotificationDispatcher
from docflow.engine.workflow.orchestrator import InstanceOrchestrator
from docflow.engine.workflow.state_machine import TaskStatus
from docflow.engine.workflow.store import WorkflowStore
from docflow.engine.workflow.tasks import AssigneeResolver, TaskManager
from docflow.engine.workflow.triggers import select_definition

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """The document approval workflow engine.

    Collaborators:
        directory: user/role/department lookups for assignee resolution.
        notifier: receives notification intents.
        bookkeeping: creates the bookkeeping entry when an approved
            definition requests one. Optional; without it such completions
            are recorded as failed entry creations.
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        directory: UserDirectory,
        notifier: Notifier,
        bookkeeping: BookkeepingEntryCreator | None = None,
        store: WorkflowStore | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or WorkflowStore(settings.state_path)
        self.audit = audit or AuditLog(
            settings.audit_log_path, seed_digest=settings.audit_seed_digest
        )

        self._bookkeeping = (
            BookkeepingAdapter(bookkeeping, timeout_seconds=settings.bookkeeping_timeout_seconds)
            if bookkeeping is not None
            else None
        )
        dispatcher = NotificationDispatcher(notifier=notifier, audit=self.audit)
        resolver = AssigneeResolver(directory)
        self.tasks = TaskManager(
            store=self.store, audit=self.audit, resolver=resolver, dispatcher=dispatcher
        )
        self.orchestrator = InstanceOrchestrator(
            store=self.store,
            audit=self.audit,
            tasks=self.tasks,
            actions=ActionRunner(dispatcher=dispatcher, resolver=resolver),
            dispatcher=dispatcher,
            bookkeeping=self._bookkeeping,
            expire_unconsulted_tasks=settings.expire_unconsulted_tasks,
        )
        self.decisions = DecisionProcessor(
            store=self.store, audit=self.audit, tasks=self.tasks, orchestrator=self.orchestrator
        )
        self.escalations = EscalationScheduler(
            store=self.store,
            audit=self.audit,
            tasks=self.tasks,
            resolver=resolver,
            reminder_lead=settings.reminder_lead,
        )
        self._runner: EscalationRunner | None = None

    # --- definitions -----------------------------------------------------

    def register_definition(
        self, definition: WorkflowDefinition | Mapping[str, object]
    ) -> WorkflowDefinition:
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.from_config(definition)
        saved = self.store.save_definition(definition)
        logger.info(
            "Workflow definition saved",
            extra={"definition_id": saved.id, "organization_id": saved.organization_id},
        )
        return saved

    # --- lifecycle -------------------------------------------------------

    def handle_document_ready(self, event: DocumentReadyEvent) -> WorkflowInstance | None:
        """Start the matching workflow for a freshly ingested document.

        Returns ``None`` when no definition matches. A repeated event for a
        document already running under the selected definition returns the
        existing instance.
        """

        definition = select_definition(
            event, self.store.list_definitions(event.organization_id)
        )
        if definition is None:
            logger.info(
                "No workflow definition matches document",
                extra={"document_id": event.document_id, "organization_id": event.organization_id},
            )
            return None
        existing = self.store.find_instance(
            document_id=event.document_id, definition_id=definition.id
        )
        if existing is not None:
            return existing
        try:
            return self.orchestrator.start(event, definition)
        except InstanceAlreadyExists as e:
            # A concurrent event for the same document won the create.
            return self.store.get_instance(e.instance_id)

    def decide(self, submission: DecisionSubmission, actor: ActorContext) -> DecisionResult:
        return self.decisions.decide(submission, actor)

    def cancel(
        self, instance_id: str, reason: str, *, actor_id: str | None = None
    ) -> WorkflowInstance:
        return self.orchestrator.cancel(instance_id, reason, actor_id=actor_id)

    def advance(self, instance_id: str) -> WorkflowInstance:
        return self.orchestrator.advance(instance_id)

    def retry_bookkeeping_entry(self, instance_id: str) -> WorkflowInstance:
        return self.orchestrator.retry_bookkeeping_entry(instance_id)

    def sweep(self, now: datetime | None = None) -> SweepReport:
        return self.escalations.sweep(now)

    # --- queries ---------------------------------------------------------

    def instance(self, instance_id: str) -> WorkflowInstance:
        return self.store.get_instance(instance_id)

    def pending_tasks(self, instance_id: str) -> list[ApprovalTask]:
        return self.store.tasks_for_instance(instance_id, status=TaskStatus.PENDING)

    def stalled_tasks(self, organization_id: str) -> list[ApprovalTask]:
        return self.escalations.stalled_tasks(organization_id)

    def audit_trail(
        self,
        organization_id: str,
        *,
        instance_id: str | None = None,
        event_types: Collection[AuditEventType | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> AuditPage:
        return self.audit.query(
            organization_id,
            instance_id=instance_id,
            event_types=event_types,
            since=since,
            until=until,
            page=page,
            limit=limit,
        )

    def verify_audit(self, organization_id: str) -> AuditVerification:
        return self.audit.verify(organization_id)

    # --- background ------------------------------------------------------

    def start_escalation_runner(self) -> EscalationRunner:
        if self._runner is None:
            self._runner = EscalationRunner(
                self.sweep, interval_seconds=self.settings.escalation_interval_seconds
            )
        self._runner.start()
        return self._runner

    def close(self) -> None:
        if self._runner is not None:
            self._runner.stop()
        if self._bookkeeping is not None:
            self._bookkeeping.close()
