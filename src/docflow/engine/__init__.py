"""Approval workflow engine components.

The engine provides:
- Settings loaded from .env
- Structured logging
- The workflow domain (definitions, instances, tasks, audit)
- A background escalation runner
"""
