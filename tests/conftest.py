"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest

from docflow.engine.config import EngineSettings
from docflow.engine.service import WorkflowEngine
from docflow.engine.workflow.collaborators import InMemoryDirectory
from docflow.engine.workflow.events import DocumentReadyEvent
from docflow.engine.workflow.models import WorkflowDefinition, WorkflowInstance
from support import ORG, FakeBookkeeping, RecordingNotifier


@pytest.fixture
def settings() -> EngineSettings:
    """Memory-only settings that ignore any developer .env file."""
    return EngineSettings(
        _env_file=None,
        log_level="DEBUG",
        reminder_lead_minutes=0,
        bookkeeping_timeout_seconds=2.0,
    )


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory(
        roles={ORG: {"accountant": ["acc-2", "acc-1"], "cfo": ["cfo-1"], "manager": ["mgr-1"]}},
        departments={ORG: {"finance": ["fin-1", "fin-2", "fin-1"]}},
        managers={ORG: {"owner-1": "mgr-1", "u1": "mgr-1", "u2": "mgr-1"}},
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def bookkeeping() -> FakeBookkeeping:
    return FakeBookkeeping()


@pytest.fixture
def engine_factory(
    settings: EngineSettings,
    directory: InMemoryDirectory,
    notifier: RecordingNotifier,
    bookkeeping: FakeBookkeeping,
) -> Iterator[Callable[..., WorkflowEngine]]:
    """Build engines sharing the test doubles; keyword arguments override settings."""

    engines: list[WorkflowEngine] = []

    def _build(**overrides: object) -> WorkflowEngine:
        eng = WorkflowEngine(
            settings.model_copy(update=overrides),
            directory=directory,
            notifier=notifier,
            bookkeeping=bookkeeping,
        )
        engines.append(eng)
        return eng

    yield _build
    for eng in engines:
        eng.close()


@pytest.fixture
def engine(engine_factory: Callable[..., WorkflowEngine]) -> WorkflowEngine:
    return engine_factory()


@pytest.fixture
def make_document() -> Callable[..., DocumentReadyEvent]:
    def _make(
        document_id: str = "doc-1",
        *,
        document_type: str = "invoice",
        amount: object = 5000,
        tags: tuple[str, ...] = (),
        owner_id: str = "owner-1",
        **fields: object,
    ) -> DocumentReadyEvent:
        extracted: dict[str, object] = {"amount": amount, **fields}
        return DocumentReadyEvent(
            document_id=document_id,
            document_type=document_type,
            owner_id=owner_id,
            organization_id=ORG,
            tags=tags,
            extracted_fields=extracted,
        )

    return _make


@pytest.fixture
def make_definition() -> Callable[..., WorkflowDefinition]:
    def _make(*stages: dict[str, object], **overrides: object) -> WorkflowDefinition:
        raw: dict[str, object] = {
            "organization_id": ORG,
            "name": "Invoice approval",
            "document_types": ["invoice"],
            "stages": [{"order": i, "name": f"stage {i}", **s} for i, s in enumerate(stages, 1)],
        }
        raw.update(overrides)
        return WorkflowDefinition.model_validate(raw)

    return _make




@pytest.fixture
def start_workflow(
    engine: WorkflowEngine,
    make_definition: Callable[..., WorkflowDefinition],
    make_document: Callable[..., DocumentReadyEvent],
) -> Callable[..., WorkflowInstance]:
    """Register a definition built from raw stages and start it for one document."""

    def _start(
        *stages: dict[str, object],
        document: DocumentReadyEvent | None = None,
        **overrides: object,
    ) -> WorkflowInstance:
        engine.register_definition(make_definition(*stages, **overrides))
        instance = engine.handle_document_ready(document or make_document())
        assert instance is not None
        return instance

    return _start
