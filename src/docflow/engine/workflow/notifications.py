from __future__ import annotations

import logging
from dataclasses import dataclass

from docflow.engine.errors import DependencyFailure

from .audit import AuditEventType, AuditLog
from .collaborators import NotificationRequest, Notifier

logger = logging.getLogger(__name__)


@dataclass
class NotificationDispatcher:
    """Send notification intents on behalf of engine components.

    Notifications for transitions that are already committed are
    best-effort: a delivery failure is logged and audited, the transition
    stands. ``strict=True`` turns the failure into a DependencyFailure for
    callers (stage-entry actions) that must not proceed without delivery.
    """

    notifier: Notifier
    audit: AuditLog

    def send(
        self,
        request: NotificationRequest,
        *,
        instance_id: str | None = None,
        strict: bool = False,
    ) -> bool:
        try:
            self.notifier.notify(request)
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                exc_info=True,
                extra={
                    "recipient_id": request.recipient_id,
                    "notification_type": request.type.value,
                    "instance_id": instance_id,
                },
            )
            self.audit.append(
                request.organization_id,
                AuditEventType.NOTIFICATION_FAILED,
                {
                    "recipient_id": request.recipient_id,
                    "type": request.type.value,
                    "action_ref": request.action_ref,
                    "error": str(e),
                },
                instance_id=instance_id,
            )
            if strict:
                raise DependencyFailure(
                    f"Notifier unavailable: {e}", dependency="notifier"
                ) from e
            return False
        return True
