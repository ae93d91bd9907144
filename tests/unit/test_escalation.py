"""Unit tests for the escalation sweep, reminders and the background runner."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta
from unittest.mock import Mock

import pytest

from docflow.engine.errors import InvalidState
from docflow.engine.runner import EscalationRunner
from docflow.engine.service import WorkflowEngine
from docflow.engine.workflow.collaborators import NotificationType
from docflow.engine.workflow.escalation import SweepReport
from docflow.engine.workflow.events import DocumentReadyEvent
from docflow.engine.workflow.models import (
    TaskOrigin,
    WorkflowDefinition,
    WorkflowInstance,
    utc_now,
)
from docflow.engine.workflow.state_machine import (
    InstanceStatus,
    Outcome,
    StageStatus,
    TaskStatus,
)
from support import ORG, RecordingNotifier, decide, fixed, pending_task

Start = Callable[..., WorkflowInstance]

TO_MANAGERS = {"escalation": {"kind": "role", "role": "manager"}}


def test_scenario_overdue_tasks_escalate_to_the_manager_role(
    engine: WorkflowEngine, notifier: RecordingNotifier, start_workflow: Start
) -> None:
    instance = start_workflow(fixed("u1", "u2", approval_mode="all", **TO_MANAGERS))
    originals = {t.id: t for t in engine.pending_tasks(instance.id)}
    now = utc_now() + timedelta(hours=25)

    report = engine.sweep(now)

    assert sorted(report.escalated) == sorted(originals)
    assert len(report.replacements) == 2
    assert report.stalled == []
    replacements = engine.pending_tasks(instance.id)
    assert [t.assignee_id for t in replacements] == ["mgr-1", "mgr-1"]
    assert all(t.due_at == now + timedelta(hours=24) for t in replacements)
    assert all(t.origin is TaskOrigin.ESCALATION for t in replacements)
    assert {t.replaces_task_id for t in replacements} == set(originals)
    for task_id, original in originals.items():
        escalated = engine.store.get_task(task_id)
        assert escalated.status is TaskStatus.ESCALATED
        assert escalated.due_at == original.due_at
    (stage,) = engine.store.stages_for_instance(instance.id)
    assert stage.status is StageStatus.ESCALATED
    assert stage.escalation_count == 2
    assert len(notifier.to("mgr-1", NotificationType.ESCALATION)) == 2
    assert notifier.to("u1", NotificationType.ESCALATION)
    assert engine.audit_trail(ORG, event_types=["escalated"]).total == 2


def test_sweep_is_idempotent(engine: WorkflowEngine, start_workflow: Start) -> None:
    instance = start_workflow(fixed("u1", **TO_MANAGERS))
    now = utc_now() + timedelta(hours=25)

    first = engine.sweep(now)
    second = engine.sweep(now)

    assert len(first.escalated) == 1
    assert second == SweepReport()
    assert len(engine.store.tasks_for_instance(instance.id)) == 2


def test_replacement_decisions_resolve_the_escalated_stage(
    engine: WorkflowEngine, start_workflow: Start
) -> None:
    instance = start_workflow(fixed("u1", "u2", approval_mode="all", **TO_MANAGERS))
    engine.sweep(utc_now() + timedelta(hours=25))

    outcomes = [decide(engine, t).stage_outcome for t in engine.pending_tasks(instance.id)]

    assert outcomes == [None, Outcome.APPROVED]
    final = engine.instance(instance.id)
    assert (final.status, final.outcome) == (InstanceStatus.COMPLETED, Outcome.APPROVED)


def test_tasks_not_yet_due_are_left_alone(engine: WorkflowEngine, start_workflow: Start) -> None:
    start_workflow(fixed("u1", **TO_MANAGERS))

    assert engine.sweep(utc_now() + timedelta(hours=23)).escalated == []


def test_overdue_replacement_escalates_again(
    engine: WorkflowEngine, start_workflow: Start
) -> None:
    instance = start_workflow(
        fixed("u1", escalation={"kind": "manager_of_assignee"}, sla="PT1H")
    )
    engine.sweep(utc_now() + timedelta(hours=2))
    replacement = pending_task(engine, instance.id, "mgr-1")

    report = engine.sweep(utc_now() + timedelta(hours=4))

    assert report.escalated == [replacement.id]
    assert report.stalled == [replacement.id]
    (stage,) = engine.store.stages_for_instance(instance.id)
    assert stage.escalation_count == 2


def test_without_target_the_stage_is_stalled(
    engine: WorkflowEngine, start_workflow: Start
) -> None:
    instance = start_workflow(
        fixed("u1"), fixed("u2", escalation={"kind": "fixed_users", "user_ids": ["u2"]})
    )
    decide(engine, pending_task(engine, instance.id, "u1"))
    task = pending_task(engine, instance.id, "u2")

    report = engine.sweep(utc_now() + timedelta(days=2))

    assert report.stalled == [task.id]
    assert [t.id for t in engine.stalled_tasks(ORG)] == [task.id]
    assert engine.instance(instance.id).status is InstanceStatus.ACTIVE
    with pytest.raises(InvalidState):
        decide(engine, engine.store.get_task(task.id))
    (entry,) = engine.audit_trail(ORG, event_types=["escalated"]).items
    assert entry.payload["stalled"] is True
    assert entry.payload["to"] is None


def test_stalled_tasks_leave_the_list_when_the_instance_ends(
    engine: WorkflowEngine, start_workflow: Start
) -> None:
    instance = start_workflow(fixed("u1"))
    engine.sweep(utc_now() + timedelta(days=2))
    assert len(engine.stalled_tasks(ORG)) == 1

    engine.cancel(instance.id, "stuck")

    assert engine.stalled_tasks(ORG) == []


def test_inactive_instances_are_not_escalated(
    engine: WorkflowEngine, start_workflow: Start
) -> None:
    instance = start_workflow(fixed("u1", **TO_MANAGERS))
    engine.store.update_instance(
        instance.id, expected=InstanceStatus.ACTIVE, status=InstanceStatus.FAILED
    )

    assert engine.sweep(utc_now() + timedelta(days=2)).escalated == []


def test_leftover_tasks_of_a_completed_stage_are_not_escalated(
    engine_factory: Callable[..., WorkflowEngine],
    notifier: RecordingNotifier,
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    engine = engine_factory(expire_unconsulted_tasks=False)
    engine.register_definition(
        make_definition(fixed("u1", "u2", **TO_MANAGERS), fixed("u3", **TO_MANAGERS))
    )
    instance = engine.handle_document_ready(make_document())
    assert instance is not None
    decide(engine, pending_task(engine, instance.id, "u1"))
    leftover = pending_task(engine, instance.id, "u2")
    current = pending_task(engine, instance.id, "u3")

    report = engine.sweep(utc_now() + timedelta(hours=25))

    assert report.escalated == [current.id]
    assert engine.store.get_task(leftover.id).status is TaskStatus.PENDING
    first_stage = engine.store.get_stage(leftover.stage_instance_id)
    assert first_stage.status is StageStatus.COMPLETED
    assert first_stage.escalation_count == 0
    assert [
        t for t in engine.store.tasks_for_instance(instance.id)
        if t.stage_instance_id == leftover.stage_instance_id and t.origin is TaskOrigin.ESCALATION
    ] == []
    assert notifier.to("u2", NotificationType.ESCALATION) == []


def test_reminder_is_sent_once_before_the_deadline(
    engine_factory: Callable[..., WorkflowEngine],
    notifier: RecordingNotifier,
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    engine = engine_factory(reminder_lead_minutes=60)
    engine.register_definition(make_definition(fixed("u1")))
    instance = engine.handle_document_ready(make_document())
    assert instance is not None
    task = pending_task(engine, instance.id, "u1")
    soon = task.due_at - timedelta(minutes=30)

    first = engine.sweep(soon)
    second = engine.sweep(soon + timedelta(minutes=5))

    assert first.reminded == [task.id]
    assert second.reminded == []
    assert first.escalated == []
    assert len(notifier.to("u1", NotificationType.REMINDER)) == 1
    assert engine.store.get_task(task.id).reminder_sent_at == soon
    assert engine.audit_trail(ORG, event_types=["reminder_sent"]).total == 1


def test_no_reminder_outside_the_lead_window(
    engine_factory: Callable[..., WorkflowEngine],
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    engine = engine_factory(reminder_lead_minutes=60)
    engine.register_definition(make_definition(fixed("u1")))
    instance = engine.handle_document_ready(make_document())
    assert instance is not None

    assert engine.sweep(utc_now() + timedelta(hours=1)).reminded == []


def test_runner_keeps_sweeping_after_failures() -> None:
    calls = threading.Event()
    sweep = Mock(side_effect=[RuntimeError("db down"), SweepReport(), SweepReport()])

    def tracked() -> SweepReport:
        try:
            return sweep()
        finally:
            if sweep.call_count >= 2:
                calls.set()

    runner = EscalationRunner(tracked, interval_seconds=0.01)
    runner.start()
    try:
        assert calls.wait(timeout=2.0)
    finally:
        runner.stop()

    assert sweep.call_count >= 2
    assert runner.runs >= 2
    assert not runner.running


def test_runner_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        EscalationRunner(Mock(), interval_seconds=0)


def test_engine_owns_its_runner(engine: WorkflowEngine) -> None:
    engine.settings = engine.settings.model_copy(update={"escalation_interval_seconds": 0.01})

    runner = engine.start_escalation_runner()
    deadline = time.monotonic() + 2.0
    while runner.runs < 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    engine.close()

    assert runner.runs >= 1
    assert not runner.running
