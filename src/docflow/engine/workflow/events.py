from __future__ import annotations

from dataclasses import dataclass, field

from .state_machine import Decision


@dataclass(frozen=True, slots=True)
class DocumentReadyEvent:
    """A document finished ingestion and extraction.

    Emitted by the ingestion side. The engine never fetches documents itself;
    everything it evaluates must be carried here.
    """

    document_id: str
    document_type: str
    owner_id: str
    organization_id: str
    tags: tuple[str, ...] = ()
    extracted_fields: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ActorContext:
    """Identity of the authenticated caller, supplied by the auth layer."""

    actor_id: str
    ip_address: str | None = None
    device_fingerprint: str | None = None


@dataclass(frozen=True, slots=True)
class DecisionSubmission:
    task_id: str
    decision: Decision
    comment: str | None = None
    delegate_to: str | None = None
