from __future__ import annotations

import logging
from collections.abc import Iterable

from .events import DocumentReadyEvent
from .models import WorkflowDefinition
from .predicates import EvaluationContext

logger = logging.getLogger(__name__)


def select_definition(
    document: DocumentReadyEvent, definitions: Iterable[WorkflowDefinition]
) -> WorkflowDefinition | None:
    """Pick the first definition, by descending priority, whose trigger fully matches.

    Deterministic and side-effect free. ``None`` means no workflow applies; the
    caller decides whether that is an error.
    """

    ctx = EvaluationContext(document=document, context={})
    ordered = sorted(
        definitions, key=lambda d: (-d.priority, d.name, d.version, d.id)
    )
    for definition in ordered:
        if not definition.is_active or definition.organization_id != document.organization_id:
            continue
        if document.document_type not in definition.document_types:
            continue
        if definition.trigger.matches(ctx):
            logger.debug(
                "Workflow definition matched",
                extra={"document_id": document.document_id, "definition_id": definition.id},
            )
            return definition
    return None
