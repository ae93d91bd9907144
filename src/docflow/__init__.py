"""Document approval workflow engine.

Routes ingested documents through configurable multi-stage approval
workflows:
- trigger matching against per-organization workflow definitions
- per-assignee approval tasks with any/all/majority/threshold resolution
- delegation and SLA-driven escalation
- a hash-chained, organization-scoped audit trail
- bookkeeping-entry creation on approval
"""

__version__ = "0.1.0"

from docflow.engine.config import EngineSettings
from docflow.engine.service import WorkflowEngine

__all__ = ["__version__", "EngineSettings", "WorkflowEngine"]
