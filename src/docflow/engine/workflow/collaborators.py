"""Interfaces of the engine's external collaborators.

The engine decides *what* should happen and *to whom*; these collaborators
own the how (user directory, notification delivery, bookkeeping postings).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field


class UserDirectory(Protocol):
    """Organization membership lookups used for assignee resolution."""

    def users_with_role(self, organization_id: str, role: str) -> list[str]: ...

    def department_members(self, organization_id: str, department_id: str) -> list[str]: ...

    def manager_of(self, organization_id: str, user_id: str) -> str | None: ...


@dataclass
class InMemoryDirectory:
    """Directory backed by plain mappings, keyed by organization id."""

    roles: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    departments: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    managers: dict[str, dict[str, str]] = field(default_factory=dict)

    def users_with_role(self, organization_id: str, role: str) -> list[str]:
        return list(self.roles.get(organization_id, {}).get(role, []))

    def department_members(self, organization_id: str, department_id: str) -> list[str]:
        return list(self.departments.get(organization_id, {}).get(department_id, []))

    def manager_of(self, organization_id: str, user_id: str) -> str | None:
        return self.managers.get(organization_id, {}).get(user_id)

    def grant_role(self, organization_id: str, role: str, user_ids: Iterable[str]) -> None:
        self.roles.setdefault(organization_id, {}).setdefault(role, []).extend(user_ids)


class NotificationType(str, Enum):
    APPROVAL_REQUEST = "approval_request"
    REMINDER = "reminder"
    ESCALATION = "escalation"
    COMPLETED = "completed"
    REJECTED = "rejected"
    STAGE_ACTION = "stage_action"


class NotificationRequest(BaseModel):
    """A structured delivery intent. Channel and final copy are the notifier's call."""

    recipient_id: str
    organization_id: str
    type: NotificationType
    subject: str
    body: str = ""
    action_ref: str | None = Field(
        default=None, description="Task or instance id the recipient should act on"
    )


class Notifier(Protocol):
    def notify(self, request: NotificationRequest) -> None:
        """Deliver or enqueue ``request``. Raise to signal the channel is unavailable."""
        ...


class BookkeepingEntryRequest(BaseModel):
    organization_id: str
    instance_id: str
    document_id: str
    document_type: str
    entry_template_id: str | None
    financial_fields: dict[str, object]


class BookkeepingEntryCreator(Protocol):
    def create_entry(self, request: BookkeepingEntryRequest) -> str:
        """Post the entry and return its opaque identifier."""
        ...
