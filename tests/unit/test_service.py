"""Unit tests for the engine facade."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from docflow import EngineSettings, WorkflowEngine
from docflow.engine.workflow.audit import AuditEventType, AuditLog
from docflow.engine.workflow.collaborators import (
    InMemoryDirectory,
    NotificationRequest,
    NotificationType,
)
from docflow.engine.workflow.events import DocumentReadyEvent
from docflow.engine.workflow.models import WorkflowDefinition, WorkflowInstance
from docflow.engine.workflow.notifications import NotificationDispatcher
from docflow.engine.workflow.state_machine import InstanceStatus, Outcome, StageStatus
from support import ORG, FakeBookkeeping, RecordingNotifier, decide, fixed, pending_task


def test_state_and_audit_survive_a_restart(
    tmp_path: Path,
    directory: InMemoryDirectory,
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    settings = EngineSettings(
        _env_file=None,
        state_path=tmp_path / "state.json",
        audit_log_path=tmp_path / "audit.jsonl",
    )
    first = WorkflowEngine(settings, directory=directory, notifier=RecordingNotifier())
    first.register_definition(make_definition(fixed("u1"), fixed("u2")))
    instance = first.handle_document_ready(make_document())
    assert instance is not None
    decide(first, pending_task(first, instance.id, "u1"))
    first.close()

    second = WorkflowEngine(
        settings,
        directory=directory,
        notifier=RecordingNotifier(),
        bookkeeping=FakeBookkeeping(),
    )
    try:
        stages = second.store.stages_for_instance(instance.id)
        assert [s.status for s in stages] == [StageStatus.COMPLETED, StageStatus.ACTIVE]
        assert second.verify_audit(ORG).valid

        decide(second, pending_task(second, instance.id, "u2"))

        final = second.instance(instance.id)
        assert (final.status, final.outcome) == (InstanceStatus.COMPLETED, Outcome.APPROVED)
        assert second.verify_audit(ORG).valid
    finally:
        second.close()


def test_audit_trail_is_paginated_per_instance(
    engine: WorkflowEngine, start_workflow: Callable[..., WorkflowInstance]
) -> None:
    instance = start_workflow(fixed("u1", "u2", approval_mode="all"))

    page = engine.audit_trail(ORG, instance_id=instance.id, limit=2)

    assert page.total == 3
    assert [e.event_type for e in page.items] == ["workflow_started", "stage_entered"]
    assert page.has_next
    second_page = engine.audit_trail(ORG, instance_id=instance.id, page=2, limit=2)
    assert second_page.items[0].event_type == AuditEventType.TASKS_CREATED.value


def test_repeated_event_returns_the_running_instance(
    engine: WorkflowEngine,
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    engine.register_definition(make_definition(fixed("u1")))
    first = engine.handle_document_ready(make_document())
    assert first is not None

    repeated = engine.handle_document_ready(make_document())
    assert repeated is not None
    assert repeated.id == first.id


def test_event_that_loses_the_create_race_returns_the_winner(
    engine: WorkflowEngine,
    monkeypatch: pytest.MonkeyPatch,
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    engine.register_definition(make_definition(fixed("u1")))
    winner = engine.handle_document_ready(make_document())
    assert winner is not None
    # The duplicate check ran before the winner was stored.
    monkeypatch.setattr(engine.store, "find_instance", lambda **_: None)

    loser = engine.handle_document_ready(make_document())

    assert loser is not None
    assert loser.id == winner.id
    assert engine.audit_trail(ORG, event_types=["workflow_started"]).total == 1
    assert len(engine.pending_tasks(winner.id)) == 1


def test_concurrent_events_start_one_instance(
    engine: WorkflowEngine,
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> None:
    engine.register_definition(make_definition(fixed("u1")))
    barrier = threading.Barrier(4)
    started: list[WorkflowInstance | None] = []

    def handle() -> None:
        barrier.wait()
        started.append(engine.handle_document_ready(make_document()))

    threads = [threading.Thread(target=handle) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(started) == 4
    assert len({i.id for i in started if i is not None}) == 1
    assert engine.audit_trail(ORG, event_types=["workflow_started"]).total == 1


def test_notification_failures_do_not_block_assignment(
    engine: WorkflowEngine,
    notifier: RecordingNotifier,
    start_workflow: Callable[..., WorkflowInstance],
) -> None:
    notifier.fail = True

    instance = start_workflow(fixed("u1", "u2"))

    assert len(engine.pending_tasks(instance.id)) == 2
    assert engine.audit_trail(ORG, event_types=["notification_failed"]).total == 2


def test_dispatcher_reports_delivery() -> None:
    notifier = RecordingNotifier()
    audit = AuditLog()
    dispatcher = NotificationDispatcher(notifier=notifier, audit=audit)
    request = NotificationRequest(
        recipient_id="u1",
        organization_id=ORG,
        type=NotificationType.REMINDER,
        subject="Due soon",
        action_ref="task-1",
    )

    assert dispatcher.send(request) is True
    notifier.fail = True
    assert dispatcher.send(request, instance_id="inst-1") is False

    (failure,) = audit.entries(ORG)
    assert failure.event_type == "notification_failed"
    assert failure.instance_id == "inst-1"
    assert failure.payload["action_ref"] == "task-1"
