"""Append-only, hash-chained audit log.

Each organization has its own chain. An entry's digest is
``sha256(canonical_json(entry material) + previous_digest)``, starting from a
fixed seed digest, so editing or deleting any stored entry breaks
verification from that point forward.

Appends for one organization are serialized through a per-organization lock;
different organizations never contend.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import threading
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from .models import new_id, utc_now

logger = logging.getLogger(__name__)

SEED_DIGEST = "0" * 64


class AuditEventType(str, Enum):
    WORKFLOW_STARTED = "workflow_started"
    STAGE_ENTERED = "stage_entered"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_ENTRY_FAILED = "stage_entry_failed"
    STAGE_COMPLETED = "stage_completed"
    TASKS_CREATED = "tasks_created"
    APPROVAL_COMPLETED = "approval_completed"
    DELEGATED = "delegated"
    ESCALATED = "escalated"
    REMINDER_SENT = "reminder_sent"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_FAILED = "workflow_failed"
    ENTRY_CREATED = "entry_created"
    ENTRY_CREATION_FAILED = "entry_creation_failed"
    NOTIFICATION_FAILED = "notification_failed"


class AuditEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    sequence: int
    event_type: str
    instance_id: str | None = None
    actor_id: str | None = None
    payload: dict[str, object] = Field(default_factory=dict)
    created_at: datetime
    previous_digest: str
    digest: str

    def material(self) -> str:
        """Canonical serialization of everything the digest covers."""

        return json.dumps(
            {
                "organization_id": self.organization_id,
                "sequence": self.sequence,
                "event_type": self.event_type,
                "instance_id": self.instance_id,
                "actor_id": self.actor_id,
                "payload": self.payload,
                "created_at": self.created_at.isoformat(),
            },
            sort_keys=True,
            ensure_ascii=True,
            separators=(",", ":"),
        )


def compute_digest(material: str, previous_digest: str) -> str:
    return hashlib.sha256((material + previous_digest).encode("utf-8")).hexdigest()


class AuditPage(BaseModel):
    items: list[AuditEntry]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_previous: bool


@dataclass(frozen=True, slots=True)
class AuditVerification:
    valid: bool
    checked_count: int
    last_digest: str
    broken_at_sequence: int | None = None
    reason: str | None = None


class AuditLog:
    """Organization-scoped hash chain with an optional JSON-lines backing file."""

    def __init__(self, path: Path | None = None, *, seed_digest: str = SEED_DIGEST) -> None:
        self._path = path
        self._seed = seed_digest
        self._entries: dict[str, list[AuditEntry]] = {}
        self._org_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._file_lock = threading.Lock()
        if path is not None and path.exists():
            self._load()

    def _load(self) -> None:
        assert self._path is not None
        with self._path.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entry = AuditEntry.model_validate_json(line)
                except ValueError:
                    # Keep loading; verify() reports the resulting gap.
                    logger.error(
                        "Skipping unreadable audit line",
                        extra={"path": str(self._path), "line": lineno},
                    )
                    continue
                self._entries.setdefault(entry.organization_id, []).append(entry)

    def _lock_for(self, organization_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._org_locks.get(organization_id)
            if lock is None:
                lock = threading.Lock()
                self._org_locks[organization_id] = lock
            return lock

    def append(
        self,
        organization_id: str,
        event_type: AuditEventType | str,
        payload: Mapping[str, object] | None = None,
        *,
        actor_id: str | None = None,
        instance_id: str | None = None,
    ) -> AuditEntry:
        kind = event_type.value if isinstance(event_type, AuditEventType) else event_type
        normalized = to_jsonable_python(dict(payload or {}))
        with self._lock_for(organization_id):
            chain = self._entries.setdefault(organization_id, [])
            previous = chain[-1].digest if chain else self._seed
            sequence = chain[-1].sequence + 1 if chain else 1
            entry = AuditEntry(
                organization_id=organization_id,
                sequence=sequence,
                event_type=kind,
                instance_id=instance_id,
                actor_id=actor_id,
                payload=normalized,
                created_at=utc_now(),
                previous_digest=previous,
                digest="",
            )
            entry = entry.model_copy(update={"digest": compute_digest(entry.material(), previous)})
            self._write(entry)
            chain.append(entry)

        logger.debug(
            "Audit entry appended",
            extra={
                "organization_id": organization_id,
                "event_type": kind,
                "sequence": entry.sequence,
                "instance_id": instance_id,
            },
        )
        return entry

    def _write(self, entry: AuditEntry) -> None:
        if self._path is None:
            return
        with self._file_lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")

    def entries(self, organization_id: str) -> list[AuditEntry]:
        with self._lock_for(organization_id):
            return list(self._entries.get(organization_id, []))

    def verify(self, organization_id: str) -> AuditVerification:
        """Recompute the chain from the seed and compare every stored digest."""

        previous = self._seed
        checked = 0
        for expected_sequence, entry in enumerate(self.entries(organization_id), start=1):
            checked += 1
            reason: str | None = None
            if entry.sequence != expected_sequence:
                reason = "sequence_gap"
            elif entry.previous_digest != previous:
                reason = "previous_digest_mismatch"
            elif entry.digest != compute_digest(entry.material(), previous):
                reason = "digest_mismatch"
            if reason is not None:
                logger.warning(
                    "Audit chain verification failed",
                    extra={
                        "organization_id": organization_id,
                        "sequence": entry.sequence,
                        "reason": reason,
                    },
                )
                return AuditVerification(
                    valid=False,
                    checked_count=checked,
                    last_digest=previous,
                    broken_at_sequence=entry.sequence,
                    reason=reason,
                )
            previous = entry.digest
        return AuditVerification(valid=True, checked_count=checked, last_digest=previous)

    def query(
        self,
        organization_id: str,
        *,
        instance_id: str | None = None,
        event_types: Collection[AuditEventType | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> AuditPage:
        """Read-only, paginated view of one organization's chain in insertion order."""

        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        kinds = (
            {k.value if isinstance(k, AuditEventType) else k for k in event_types}
            if event_types
            else None
        )
        matched = [
            e
            for e in self.entries(organization_id)
            if (instance_id is None or e.instance_id == instance_id)
            and (kinds is None or e.event_type in kinds)
            and (since is None or e.created_at >= since)
            and (until is None or e.created_at <= until)
        ]
        total = len(matched)
        total_pages = math.ceil(total / limit) if total else 0
        start = (page - 1) * limit
        return AuditPage(
            items=matched[start : start + limit],
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )
