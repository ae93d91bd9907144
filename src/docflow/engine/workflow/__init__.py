"""Explicit workflow domain concepts.

This package introduces first-class types for:
- Document trigger events and decision submissions
- Workflow definitions, stage templates and assignee rules
- Persisted instance / stage / task state with guarded transitions
- The hash-chained audit log

Every status change is a compare-and-swap against the expected prior status,
so concurrent actors and escalation sweeps never need explicit locking above
the store.
"""

__all__: list[str] = []
