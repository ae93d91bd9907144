"""Unit tests for the guarded workflow store."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import pytest

from docflow.engine.errors import InstanceAlreadyExists, InvalidState, NotFound
from docflow.engine.workflow.events import DocumentReadyEvent
from docflow.engine.workflow.models import (
    ApprovalTask,
    StageInstance,
    WorkflowDefinition,
    WorkflowInstance,
    utc_now,
)
from docflow.engine.workflow.state_machine import (
    IllegalTransitionError,
    InstanceStatus,
    StageStatus,
    TaskStatus,
)
from docflow.engine.workflow.store import WorkflowStore


def _seed(
    store: WorkflowStore,
    definition: WorkflowDefinition,
    document: DocumentReadyEvent,
) -> tuple[WorkflowInstance, list[StageInstance]]:
    store.save_definition(definition)
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
    store.create_instance(instance, stages)
    return instance, stages


def _task(
    instance: WorkflowInstance, stage: StageInstance, assignee: str, **kw: object
) -> ApprovalTask:
    return ApprovalTask(
        organization_id=instance.organization_id,
        instance_id=instance.id,
        stage_instance_id=stage.id,
        assignee_id=assignee,
        due_at=kw.pop("due_at", utc_now() + timedelta(hours=1)),
        **kw,
    )


@pytest.fixture
def two_stage(
    make_definition: Callable[..., WorkflowDefinition],
) -> WorkflowDefinition:
    return make_definition({}, {})


def test_missing_records_raise_not_found() -> None:
    store = WorkflowStore()

    with pytest.raises(NotFound):
        store.get_definition("nope")
    with pytest.raises(NotFound):
        store.get_instance("nope")
    with pytest.raises(NotFound):
        store.get_task("nope")


def test_definitions_are_listed_by_priority(
    make_definition: Callable[..., WorkflowDefinition],
) -> None:
    store = WorkflowStore()
    low = store.save_definition(make_definition({}, name="low", priority=1))
    high = store.save_definition(make_definition({}, name="high", priority=5))
    off = store.save_definition(make_definition({}, name="off", is_active=False))

    assert store.list_definitions("org-1") == [high, low]
    assert off in store.list_definitions("org-1", active_only=False)
    assert store.list_definitions("org-2") == []


def test_definition_in_use_cannot_be_replaced(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    _seed(store, two_stage, make_document())

    with pytest.raises(InvalidState):
        store.save_definition(two_stage.model_copy(update={"name": "renamed"}))


def test_duplicate_instance_for_document_is_rejected(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    instance, _ = _seed(store, two_stage, make_document())

    duplicate = instance.model_copy(update={"id": "other"})
    with pytest.raises(InstanceAlreadyExists) as excinfo:
        store.create_instance(duplicate, [])
    assert excinfo.value.instance_id == instance.id
    assert store.find_instance(document_id="doc-1", definition_id=two_stage.id) == instance


def test_update_instance_is_compare_and_swap(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    instance, _ = _seed(store, two_stage, make_document())

    done = store.update_instance(
        instance.id, expected=InstanceStatus.ACTIVE, status=InstanceStatus.CANCELLED
    )
    again = store.update_instance(
        instance.id, expected=InstanceStatus.ACTIVE, status=InstanceStatus.COMPLETED
    )

    assert done is not None and done.status is InstanceStatus.CANCELLED
    assert again is None
    assert store.get_instance(instance.id).status is InstanceStatus.CANCELLED


def test_update_predicate_guards_the_write(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    instance, _ = _seed(store, two_stage, make_document())

    skipped = store.update_instance(
        instance.id, expected=InstanceStatus.ACTIVE, when=lambda i: i.progress > 0, progress=50
    )

    assert skipped is None
    assert store.get_instance(instance.id).progress == 0


def test_illegal_status_change_raises(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    _, stages = _seed(store, two_stage, make_document())

    with pytest.raises(IllegalTransitionError):
        store.update_stage(stages[0].id, expected=StageStatus.PENDING, status=StageStatus.COMPLETED)


def test_only_one_stage_may_be_open(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    _, stages = _seed(store, two_stage, make_document())

    first = store.update_stage(
        stages[0].id, expected=StageStatus.PENDING, status=StageStatus.ACTIVE
    )
    second = store.update_stage(
        stages[1].id, expected=StageStatus.PENDING, status=StageStatus.ACTIVE
    )

    assert first is not None
    assert second is None
    assert store.get_stage(stages[1].id).status is StageStatus.PENDING


def test_escalate_stage_counts(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    _, stages = _seed(store, two_stage, make_document())

    assert store.escalate_stage(stages[0].id) is None
    store.update_stage(stages[0].id, expected=StageStatus.PENDING, status=StageStatus.ACTIVE)
    store.escalate_stage(stages[0].id)
    escalated = store.escalate_stage(stages[0].id)

    assert escalated is not None
    assert escalated.status is StageStatus.ESCALATED
    assert escalated.escalation_count == 2


def test_initial_tasks_are_added_once(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    instance, stages = _seed(store, two_stage, make_document())

    created = store.add_initial_tasks(stages[0].id, [_task(instance, stages[0], "u1")])
    again = store.add_initial_tasks(stages[0].id, [_task(instance, stages[0], "u2")])

    assert created is not None and len(created) == 1
    assert again is None
    assert [t.assignee_id for t in store.tasks_for_stage(stages[0].id)] == ["u1"]


def test_task_queries(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    instance, stages = _seed(store, two_stage, make_document())
    now = utc_now()
    overdue = _task(instance, stages[0], "u1", due_at=now - timedelta(minutes=1))
    later = _task(instance, stages[0], "u2", due_at=now + timedelta(days=1))
    store.add_tasks([overdue, later])
    store.update_task(later.id, expected=TaskStatus.PENDING, status=TaskStatus.EXPIRED)

    assert store.tasks_with_status(TaskStatus.PENDING, due_before=now) == [overdue]
    assert store.tasks_with_status(TaskStatus.PENDING, organization_id="org-2") == []
    assert [t.id for t in store.tasks_for_instance(instance.id, status=TaskStatus.EXPIRED)] == [
        later.id
    ]


def test_task_update_and_reminder_claim_are_single_shot(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    instance, stages = _seed(store, two_stage, make_document())
    task = store.add_tasks([_task(instance, stages[0], "u1")])[0]
    now = utc_now()

    assert store.claim_reminder(task.id, at=now) is not None
    assert store.claim_reminder(task.id, at=now) is None
    assert store.update_task(task.id, expected=TaskStatus.PENDING, status=TaskStatus.COMPLETED)
    expired = store.update_task(task.id, expected=TaskStatus.PENDING, status=TaskStatus.EXPIRED)
    assert expired is None


def test_merge_context_only_on_active_instances(
    two_stage: WorkflowDefinition, make_document: Callable[..., DocumentReadyEvent]
) -> None:
    store = WorkflowStore()
    instance, _ = _seed(store, two_stage, make_document())

    merged = store.merge_context(instance.id, {"cost_center": "CC-1"})
    store.update_instance(
        instance.id, expected=InstanceStatus.ACTIVE, status=InstanceStatus.FAILED
    )

    assert merged is not None and merged.context == {"cost_center": "CC-1"}
    assert store.merge_context(instance.id, {"x": 1}) is None


def test_snapshot_roundtrip(
    tmp_path: Path,
    two_stage: WorkflowDefinition,
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    path = tmp_path / "state" / "workflow.json"
    store = WorkflowStore(path)
    instance, stages = _seed(store, two_stage, make_document(tags=("capex",)))
    task = store.add_tasks([_task(instance, stages[0], "u1")])[0]

    reloaded = WorkflowStore(path)

    assert reloaded.get_definition(two_stage.id) == two_stage
    restored = reloaded.get_instance(instance.id)
    assert restored.document.tags == ("capex",)
    assert restored.document.extracted_fields == {"amount": 5000}
    assert reloaded.get_task(task.id).assignee_id == "u1"
    assert [s.id for s in reloaded.stages_for_instance(instance.id)] == [s.id for s in stages]


def test_corrupt_snapshot_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "workflow.json"
    path.write_text("{broken", encoding="utf-8")

    store = WorkflowStore(path)

    assert store.list_definitions("org-1", active_only=False) == []
