"""Workflow definitions and persisted workflow records.

Definitions (``WorkflowDefinition`` / ``StageTemplate``) are configuration and
are validated in full when they are built. Records (``WorkflowInstance``,
``StageInstance``, ``ApprovalTask``) are the mutable state the store guards
with compare-and-swap updates.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from docflow.engine.errors import DefinitionInvalid

from .events import DocumentReadyEvent
from .predicates import EvaluationContext, FieldCondition, FieldPathValue, Predicate, as_number
from .state_machine import Decision, InstanceStatus, Outcome, StageStatus, TaskStatus

_CONTEXT_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id() -> str:
    return uuid.uuid4().hex


# --- assignee rules -------------------------------------------------------


class FixedUsers(BaseModel):
    kind: Literal["fixed_users"] = "fixed_users"
    user_ids: list[str] = Field(min_length=1)


class Role(BaseModel):
    kind: Literal["role"] = "role"
    role: str = Field(min_length=1)


class Department(BaseModel):
    kind: Literal["department"] = "department"
    department_id: str = Field(min_length=1)


class DocumentOwner(BaseModel):
    kind: Literal["document_owner"] = "document_owner"


class ManagerOf(BaseModel):
    """The department manager of the document's owner."""

    kind: Literal["manager_of_owner"] = "manager_of_owner"


class Dynamic(BaseModel):
    """User id(s) read off a document field, with an optional fallback user."""

    kind: Literal["dynamic"] = "dynamic"
    field: FieldPathValue
    default_user_id: str | None = None


class ManagerOfAssignee(BaseModel):
    """Escalation only: the manager of the overdue task's assignee."""

    kind: Literal["manager_of_assignee"] = "manager_of_assignee"


AssigneeRule = Annotated[
    FixedUsers | Role | Department | DocumentOwner | ManagerOf | Dynamic,
    Field(discriminator="kind"),
]

EscalationTarget = Annotated[
    FixedUsers | Role | Department | DocumentOwner | ManagerOf | Dynamic | ManagerOfAssignee,
    Field(discriminator="kind"),
]


# --- stage actions --------------------------------------------------------


class NotifyAction(BaseModel):
    kind: Literal["notify"] = "notify"
    recipients: AssigneeRule
    subject: str
    body: str = ""


class SetContextAction(BaseModel):
    kind: Literal["set_context"] = "set_context"
    key: str
    value: Any = None

    @field_validator("key")
    @classmethod
    def _valid_key(cls, value: str) -> str:
        if not _CONTEXT_KEY_RE.match(value):
            raise ValueError(f"Invalid context key {value!r}")
        return value


StageAction = Annotated[NotifyAction | SetContextAction, Field(discriminator="kind")]


# --- definitions ----------------------------------------------------------


class StageKind(str, Enum):
    APPROVAL = "approval"
    AUTOMATIC = "automatic"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ApprovalMode(str, Enum):
    ANY = "any"
    ALL = "all"
    MAJORITY = "majority"
    THRESHOLD = "threshold"


class StageTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    order: int = Field(ge=1)
    name: str
    kind: StageKind = StageKind.APPROVAL
    execution_mode: ExecutionMode = ExecutionMode.PARALLEL
    approval_mode: ApprovalMode = ApprovalMode.ANY
    threshold: float | None = Field(default=None, gt=0, le=1)
    assignees: AssigneeRule = Field(default_factory=DocumentOwner)
    sla: timedelta = Field(default=timedelta(hours=24))
    entry: Predicate | None = None
    skip: Predicate | None = None
    escalation: EscalationTarget | None = None
    on_enter: list[StageAction] = Field(default_factory=list)
    on_approve: list[StageAction] = Field(default_factory=list)
    on_reject: list[StageAction] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_threshold(self) -> StageTemplate:
        if self.approval_mode is ApprovalMode.THRESHOLD and self.threshold is None:
            raise ValueError(f"Stage {self.name!r}: threshold mode needs a threshold")
        if self.sla <= timedelta(0):
            raise ValueError(f"Stage {self.name!r}: sla must be positive")
        return self

    @property
    def requires_decisions(self) -> bool:
        return self.kind is StageKind.APPROVAL

    def should_skip(self, ctx: EvaluationContext) -> bool:
        """A stage is skipped when its entry predicate fails or its skip predicate holds."""

        if self.entry is not None and not self.entry.holds(ctx):
            return True
        return self.skip is not None and bool(self.skip.conditions) and self.skip.holds(ctx)


class TriggerConditions(BaseModel):
    """Conjunctive trigger predicate of a workflow definition."""

    amount_field: FieldPathValue = Field(default="fields.amount", validate_default=True)
    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    tags: list[str] = Field(
        default_factory=list,
        description="The document must carry at least one of these tags (empty = no filter)",
    )
    conditions: list[FieldCondition] = Field(default_factory=list)

    def matches(self, ctx: EvaluationContext) -> bool:
        if self.amount_min is not None or self.amount_max is not None:
            amount = as_number(ctx.get(self.amount_field))
            if amount is None:
                return False
            if self.amount_min is not None and amount < self.amount_min:
                return False
            if self.amount_max is not None and amount > self.amount_max:
                return False
        if self.tags and not set(self.tags) & set(ctx.document.tags):
            return False
        return all(condition.evaluate(ctx) for condition in self.conditions)


class WorkflowDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str
    version: int = Field(default=1, ge=1)
    document_types: list[str] = Field(default_factory=list)
    trigger: TriggerConditions = Field(default_factory=TriggerConditions)
    priority: int = 0
    is_active: bool = True
    creates_bookkeeping_entry: bool = False
    entry_template_id: str | None = None
    stages: list[StageTemplate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_stage_order(self) -> WorkflowDefinition:
        orders = sorted(stage.order for stage in self.stages)
        if orders != list(range(1, len(orders) + 1)):
            raise ValueError(f"Stage orders must be exactly 1..{len(orders)}, got {orders}")
        self.stages.sort(key=lambda s: s.order)
        return self

    @classmethod
    def from_config(cls, raw: Mapping[str, object]) -> WorkflowDefinition:
        """Build a definition from untrusted configuration."""

        try:
            return cls.model_validate(dict(raw))
        except ValidationError as e:
            raise DefinitionInvalid(f"Invalid workflow definition: {e}") from e

    def stage(self, template_id: str) -> StageTemplate:
        for stage in self.stages:
            if stage.id == template_id:
                return stage
        raise DefinitionInvalid(f"Stage template {template_id} not in definition {self.id}")


# --- records --------------------------------------------------------------


class WorkflowInstance(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    document_id: str
    definition_id: str
    definition_version: int
    document: DocumentReadyEvent
    status: InstanceStatus = InstanceStatus.ACTIVE
    current_stage_instance_id: str | None = None
    outcome: Outcome | None = None
    progress: int = 0
    context: dict[str, Any] = Field(default_factory=dict)
    bookkeeping_entry_id: str | None = None
    bookkeeping_error: str | None = None
    bookkeeping_started_at: datetime | None = None
    cancel_reason: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not InstanceStatus.ACTIVE

    def evaluation_context(self) -> EvaluationContext:
        return EvaluationContext(document=self.document, context=self.context)


class StageInstance(BaseModel):
    id: str = Field(default_factory=new_id)
    instance_id: str
    template_id: str
    order: int
    status: StageStatus = StageStatus.PENDING
    outcome: Outcome | None = None
    activated_at: datetime | None = None
    due_at: datetime | None = None
    completed_at: datetime | None = None
    escalation_count: int = 0
    entry_actions_applied: bool = False
    planned_assignees: list[str] = Field(default_factory=list)
    dispatched_count: int = 0


class TaskOrigin(str, Enum):
    ASSIGNMENT = "assignment"
    DELEGATION = "delegation"
    ESCALATION = "escalation"


class ApprovalTask(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    instance_id: str
    stage_instance_id: str
    assignee_id: str
    origin: TaskOrigin = TaskOrigin.ASSIGNMENT
    status: TaskStatus = TaskStatus.PENDING
    due_at: datetime
    decision: Decision | None = None
    comment: str | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    ip_address: str | None = None
    device_fingerprint: str | None = None
    delegated_to: str | None = None
    replaces_task_id: str | None = None
    replaced_by_task_id: str | None = None
    reminder_sent_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
