"""Stage actions run on entry, approval and rejection.

Actions are deterministic steps. They report their outcome as an
``ActionResult`` and raise ``DependencyFailure`` only when an external
collaborator was unavailable.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from .collaborators import NotificationRequest, NotificationType
from .models import NotifyAction, SetContextAction, StageAction, WorkflowInstance
from .notifications import NotificationDispatcher


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str
    details: dict[str, object] | None = None


class RecipientResolver(Protocol):
    def resolve_rule(self, rule: object, instance: WorkflowInstance) -> list[str]: ...


@dataclass
class ActionRunner:
    dispatcher: NotificationDispatcher
    resolver: RecipientResolver

    def run(
        self,
        actions: Sequence[StageAction],
        instance: WorkflowInstance,
        *,
        strict: bool = True,
    ) -> tuple[list[ActionResult], dict[str, object]]:
        """Run ``actions`` in order.

        Returns the per-action results and the context updates they produced;
        the caller persists the updates together with the stage transition.
        With ``strict`` a failed notification raises DependencyFailure instead
        of being recorded as a failed result.
        """

        results: list[ActionResult] = []
        context_updates: dict[str, object] = {}
        for action in actions:
            if isinstance(action, NotifyAction):
                results.append(self._notify(action, instance, strict=strict))
            elif isinstance(action, SetContextAction):
                context_updates[action.key] = action.value
                results.append(
                    ActionResult(ok=True, message="Context updated", details={"key": action.key})
                )
            else:
                raise TypeError(f"Unsupported stage action: {type(action).__name__}")
        return results, context_updates

    def _notify(
        self, action: NotifyAction, instance: WorkflowInstance, *, strict: bool
    ) -> ActionResult:
        recipients = self.resolver.resolve_rule(action.recipients, instance)
        failed: list[str] = []
        for recipient in recipients:
            delivered = self.dispatcher.send(
                NotificationRequest(
                    recipient_id=recipient,
                    organization_id=instance.organization_id,
                    type=NotificationType.STAGE_ACTION,
                    subject=action.subject,
                    body=action.body,
                    action_ref=instance.id,
                ),
                instance_id=instance.id,
                strict=strict,
            )
            if not delivered:
                failed.append(recipient)
        if failed:
            return ActionResult(
                ok=False,
                message="Some notifications failed",
                details={"recipients": recipients, "failed": failed},
            )
        return ActionResult(ok=True, message="Notified", details={"recipients": recipients})
