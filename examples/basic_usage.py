#!/usr/bin/env python3
"""Programmatic approval workflow example.

This demonstrates using the engine directly:

* load settings from `.env`
* register a two-stage invoice workflow
* route one document through it and approve both stages
* verify the organization's audit chain

Amount and approvers are passed as arguments.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from docflow import EngineSettings, WorkflowEngine
from docflow.engine.logging import configure_logging
from docflow.engine.workflow.collaborators import InMemoryDirectory, NotificationRequest
from docflow.engine.workflow.events import ActorContext, DecisionSubmission, DocumentReadyEvent
from docflow.engine.workflow.state_machine import Decision

ORG = "demo-org"


class PrintingNotifier:
    def notify(self, request: NotificationRequest) -> None:
        print(f"-> {request.recipient_id}: [{request.type.value}] {request.subject}")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one invoice through an approval workflow.")
    parser.add_argument("--amount", type=float, default=12500.0, help="Invoice amount")
    parser.add_argument("--accountant", default="alice", help="First-stage approver")
    parser.add_argument("--cfo", default="carol", help="Approver for invoices of 10000 or more")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    directory = InMemoryDirectory(
        roles={ORG: {"accountant": [args.accountant], "cfo": [args.cfo]}},
    )
    engine = WorkflowEngine(settings, directory=directory, notifier=PrintingNotifier())
    engine.register_definition(
        {
            "organization_id": ORG,
            "name": "Invoice approval",
            "document_types": ["invoice"],
            "stages": [
                {
                    "order": 1,
                    "name": "Accounting review",
                    "assignees": {"kind": "role", "role": "accountant"},
                },
                {
                    "order": 2,
                    "name": "CFO sign-off",
                    "assignees": {"kind": "role", "role": "cfo"},
                    "skip": {
                        "conditions": [
                            {"field": "fields.amount", "operator": "less_than", "value": 10000}
                        ]
                    },
                },
            ],
        }
    )

    try:
        instance = engine.handle_document_ready(
            DocumentReadyEvent(
                document_id="invoice-0001",
                document_type="invoice",
                owner_id="bob",
                organization_id=ORG,
                extracted_fields={"amount": args.amount},
            )
        )
        if instance is None:
            print("No workflow applies to this document.")
            return 1

        while pending := engine.pending_tasks(instance.id):
            task = pending[0]
            engine.decide(
                DecisionSubmission(task_id=task.id, decision=Decision.APPROVED),
                ActorContext(actor_id=task.assignee_id),
            )

        final = engine.instance(instance.id)
        outcome = final.outcome.value if final.outcome else "-"
        print(f"Instance {final.id}: {final.status.value}/{outcome}")
        verification = engine.verify_audit(ORG)
        print(f"Audit chain valid: {verification.valid} ({verification.checked_count} entries)")
    finally:
        engine.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
