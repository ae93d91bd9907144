"""Lock-guarded workflow state store.

Every mutation is a single-record conditional update: the caller names the
status it expects the record to have, and the update only happens if that is
still true (the equivalent of ``UPDATE ... WHERE id=? AND status=?``). A
mismatch returns ``None`` and the caller decides whether that is a Conflict or
an already-handled no-op.

The store is memory-resident. When a snapshot path is given, every mutation
rewrites a JSON snapshot and the snapshot is reloaded on start.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Collection, Iterable
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel

from docflow.engine.errors import InstanceAlreadyExists, InvalidState, NotFound

from .models import (
    ApprovalTask,
    StageInstance,
    WorkflowDefinition,
    WorkflowInstance,
    utc_now,
)
from .state_machine import (
    INSTANCE_TRANSITIONS,
    STAGE_TRANSITIONS,
    TASK_TRANSITIONS,
    InstanceStatus,
    StageStatus,
    TaskStatus,
    ensure_transition,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _as_set(expected: Enum | Collection[Enum]) -> frozenset[Enum]:
    if isinstance(expected, Enum):
        return frozenset({expected})
    return frozenset(expected)


class WorkflowStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._instances: dict[str, WorkflowInstance] = {}
        self._stages: dict[str, StageInstance] = {}
        self._tasks: dict[str, ApprovalTask] = {}
        if path is not None:
            self._load_unlocked()

    # --- persistence -----------------------------------------------------

    def _load_unlocked(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Workflow state file is not valid JSON; starting empty",
                extra={"path": str(self._path)},
            )
            return
        if not isinstance(raw, dict):
            logger.warning(
                "Workflow state file has unexpected shape; starting empty",
                extra={"path": str(self._path)},
            )
            return

        def _items(key: str, model: type[M]) -> dict[str, M]:
            items = raw.get(key) or []
            records = [model.model_validate(item) for item in items if isinstance(item, dict)]
            return {getattr(r, "id"): r for r in records}

        self._definitions = _items("definitions", WorkflowDefinition)
        self._instances = _items("instances", WorkflowInstance)
        self._stages = _items("stage_instances", StageInstance)
        self._tasks = _items("tasks", ApprovalTask)

    def _save_unlocked(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)

        def _dump(records: Iterable[BaseModel]) -> list[dict[str, object]]:
            return [r.model_dump(mode="json") for r in records]

        payload = {
            "definitions": _dump(self._definitions.values()),
            "instances": _dump(self._instances.values()),
            "stage_instances": _dump(self._stages.values()),
            "tasks": _dump(self._tasks.values()),
        }
        self._path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    # --- definitions -----------------------------------------------------

    def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert a definition, or replace one that no live instance references."""

        with self._lock:
            existing = self._definitions.get(definition.id)
            if existing is not None and self._has_live_instances_unlocked(definition.id):
                raise InvalidState(
                    f"Definition {definition.id} is referenced by active instances; "
                    "publish a new version instead"
                )
            self._definitions[definition.id] = definition
            self._save_unlocked()
            return definition

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        with self._lock:
            definition = self._definitions.get(definition_id)
        if definition is None:
            raise NotFound(f"Workflow definition {definition_id} not found")
        return definition

    def list_definitions(
        self, organization_id: str, *, active_only: bool = True
    ) -> list[WorkflowDefinition]:
        """Definitions of one organization, highest priority first."""

        with self._lock:
            items = [
                d
                for d in self._definitions.values()
                if d.organization_id == organization_id and (d.is_active or not active_only)
            ]
        # Stable tie-break so matching stays deterministic.
        items.sort(key=lambda d: (-d.priority, d.name, d.version, d.id))
        return items

    def _has_live_instances_unlocked(self, definition_id: str) -> bool:
        return any(
            i.definition_id == definition_id and i.status is InstanceStatus.ACTIVE
            for i in self._instances.values()
        )

    # --- instances -------------------------------------------------------

    def create_instance(
        self, instance: WorkflowInstance, stages: list[StageInstance]
    ) -> WorkflowInstance:
        with self._lock:
            for existing in self._instances.values():
                if (
                    existing.document_id == instance.document_id
                    and existing.definition_id == instance.definition_id
                ):
                    raise InstanceAlreadyExists(
                        f"Document {instance.document_id} already has instance {existing.id} "
                        f"for definition {instance.definition_id}",
                        instance_id=existing.id,
                    )
            self._instances[instance.id] = instance
            for stage in stages:
                self._stages[stage.id] = stage
            self._save_unlocked()
            return instance

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        with self._lock:
            instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFound(f"Workflow instance {instance_id} not found")
        return instance

    def find_instance(self, *, document_id: str, definition_id: str) -> WorkflowInstance | None:
        with self._lock:
            for instance in self._instances.values():
                if instance.document_id == document_id and instance.definition_id == definition_id:
                    return instance
        return None

    def update_instance(
        self,
        instance_id: str,
        *,
        expected: InstanceStatus | Collection[InstanceStatus],
        when: Callable[[WorkflowInstance], bool] | None = None,
        **updates: object,
    ) -> WorkflowInstance | None:
        with self._lock:
            current = self.get_instance(instance_id)
            if current.status not in _as_set(expected):
                return None
            if when is not None and not when(current):
                return None
            target = updates.get("status")
            if isinstance(target, InstanceStatus) and target is not current.status:
                ensure_transition(INSTANCE_TRANSITIONS, current.status, target)
            merged = current.model_copy(update={"updated_at": utc_now(), **updates})
            self._instances[instance_id] = merged
            self._save_unlocked()
            return merged

    def merge_context(
        self, instance_id: str, updates: dict[str, object]
    ) -> WorkflowInstance | None:
        """Merge ``updates`` into an active instance's accumulated context."""

        with self._lock:
            current = self.get_instance(instance_id)
            if current.status is not InstanceStatus.ACTIVE:
                return None
            merged = current.model_copy(
                update={"context": {**current.context, **updates}, "updated_at": utc_now()}
            )
            self._instances[instance_id] = merged
            self._save_unlocked()
            return merged

    # --- stage instances -------------------------------------------------

    def get_stage(self, stage_instance_id: str) -> StageInstance:
        with self._lock:
            stage = self._stages.get(stage_instance_id)
        if stage is None:
            raise NotFound(f"Stage instance {stage_instance_id} not found")
        return stage

    def stages_for_instance(self, instance_id: str) -> list[StageInstance]:
        with self._lock:
            stages = [s for s in self._stages.values() if s.instance_id == instance_id]
        stages.sort(key=lambda s: s.order)
        return stages

    def update_stage(
        self,
        stage_instance_id: str,
        *,
        expected: StageStatus | Collection[StageStatus],
        when: Callable[[StageInstance], bool] | None = None,
        **updates: object,
    ) -> StageInstance | None:
        with self._lock:
            current = self.get_stage(stage_instance_id)
            if current.status not in _as_set(expected):
                return None
            if when is not None and not when(current):
                return None
            target = updates.get("status")
            if isinstance(target, StageStatus) and target is not current.status:
                ensure_transition(STAGE_TRANSITIONS, current.status, target)
            if target is StageStatus.ACTIVE:
                # Only one stage per instance may be open at a time.
                for sibling in self._stages.values():
                    if (
                        sibling.instance_id == current.instance_id
                        and sibling.id != current.id
                        and sibling.status in (StageStatus.ACTIVE, StageStatus.ESCALATED)
                    ):
                        return None
            merged = current.model_copy(update=updates)
            self._stages[stage_instance_id] = merged
            self._save_unlocked()
            return merged

    def escalate_stage(self, stage_instance_id: str) -> StageInstance | None:
        """Flag an open stage as escalated and bump its escalation counter."""

        with self._lock:
            current = self.get_stage(stage_instance_id)
            if current.status not in (StageStatus.ACTIVE, StageStatus.ESCALATED):
                return None
            merged = current.model_copy(
                update={
                    "status": StageStatus.ESCALATED,
                    "escalation_count": current.escalation_count + 1,
                }
            )
            self._stages[stage_instance_id] = merged
            self._save_unlocked()
            return merged

    # --- tasks -----------------------------------------------------------

    def add_tasks(self, tasks: Iterable[ApprovalTask]) -> list[ApprovalTask]:
        with self._lock:
            added = []
            for task in tasks:
                self._tasks[task.id] = task
                added.append(task)
            self._save_unlocked()
            return added

    def add_initial_tasks(
        self, stage_instance_id: str, tasks: Iterable[ApprovalTask]
    ) -> list[ApprovalTask] | None:
        """Add the first tasks of a stage; ``None`` if the stage already has tasks."""

        with self._lock:
            if any(t.stage_instance_id == stage_instance_id for t in self._tasks.values()):
                return None
            return self.add_tasks(tasks)

    def get_task(self, task_id: str) -> ApprovalTask:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise NotFound(f"Approval task {task_id} not found")
        return task

    def tasks_for_stage(self, stage_instance_id: str) -> list[ApprovalTask]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.stage_instance_id == stage_instance_id]
        tasks.sort(key=lambda t: (t.created_at, t.id))
        return tasks

    def tasks_for_instance(
        self, instance_id: str, *, status: TaskStatus | None = None
    ) -> list[ApprovalTask]:
        with self._lock:
            tasks = [
                t
                for t in self._tasks.values()
                if t.instance_id == instance_id and (status is None or t.status is status)
            ]
        tasks.sort(key=lambda t: (t.created_at, t.id))
        return tasks

    def tasks_with_status(
        self,
        status: TaskStatus,
        *,
        due_before: datetime | None = None,
        organization_id: str | None = None,
    ) -> list[ApprovalTask]:
        with self._lock:
            tasks = [
                t
                for t in self._tasks.values()
                if t.status is status
                and (due_before is None or t.due_at < due_before)
                and (organization_id is None or t.organization_id == organization_id)
            ]
        tasks.sort(key=lambda t: (t.due_at, t.id))
        return tasks

    def update_task(
        self,
        task_id: str,
        *,
        expected: TaskStatus | Collection[TaskStatus],
        **updates: object,
    ) -> ApprovalTask | None:
        with self._lock:
            current = self.get_task(task_id)
            if current.status not in _as_set(expected):
                return None
            target = updates.get("status")
            if isinstance(target, TaskStatus) and target is not current.status:
                ensure_transition(TASK_TRANSITIONS, current.status, target)
            merged = current.model_copy(update=updates)
            self._tasks[task_id] = merged
            self._save_unlocked()
            return merged

    def claim_reminder(self, task_id: str, *, at: datetime) -> ApprovalTask | None:
        """Mark a pending task as reminded, once."""

        with self._lock:
            current = self.get_task(task_id)
            if current.status is not TaskStatus.PENDING or current.reminder_sent_at is not None:
                return None
            merged = current.model_copy(update={"reminder_sent_at": at})
            self._tasks[task_id] = merged
            self._save_unlocked()
            return merged
