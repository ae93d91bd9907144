"""Adapter around the external bookkeeping-entry collaborator."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from docflow.engine.errors import DependencyFailure

from .collaborators import BookkeepingEntryCreator, BookkeepingEntryRequest
from .models import WorkflowDefinition, WorkflowInstance

logger = logging.getLogger(__name__)


class BookkeepingAdapter:
    """Call the entry creator with a bounded timeout.

    Any failure (timeout, collaborator error, empty identifier) surfaces as a
    DependencyFailure. A timed-out call is abandoned, not cancelled, so the
    creator must itself be idempotent per instance id.
    """

    def __init__(self, creator: BookkeepingEntryCreator, *, timeout_seconds: float) -> None:
        self._creator = creator
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="bookkeeping")

    def create_entry(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> str:
        request = BookkeepingEntryRequest(
            organization_id=instance.organization_id,
            instance_id=instance.id,
            document_id=instance.document_id,
            document_type=instance.document.document_type,
            entry_template_id=definition.entry_template_id,
            financial_fields=dict(instance.document.extracted_fields),
        )
        future = self._executor.submit(self._creator.create_entry, request)
        try:
            entry_id = future.result(timeout=self._timeout)
        except FutureTimeoutError as e:
            raise DependencyFailure(
                f"Bookkeeping entry creation timed out after {self._timeout}s",
                dependency="bookkeeping",
            ) from e
        except Exception as e:
            raise DependencyFailure(
                f"Bookkeeping entry creation failed: {e}", dependency="bookkeeping"
            ) from e

        if not isinstance(entry_id, str) or not entry_id.strip():
            raise DependencyFailure(
                "Bookkeeping collaborator returned no entry identifier",
                dependency="bookkeeping",
            )
        logger.info(
            "Bookkeeping entry created",
            extra={"instance_id": instance.id, "entry_id": entry_id},
        )
        return entry_id

    def close(self) -> None:
        self._executor.shutdown(wait=False)
