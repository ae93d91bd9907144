"""Error taxonomy for the workflow engine.

- NotFound / InvalidState / ConfigurationError are surfaced to the caller as-is.
- Conflict means a concurrent actor won a guarded transition; re-read state.
- DependencyFailure wraps an unavailable external collaborator.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(WorkflowError):
    pass


class InvalidState(WorkflowError):
    pass


class InvalidDecision(InvalidState):
    """The submitted decision is malformed, e.g. a delegation without a valid delegate."""


class InstanceAlreadyExists(InvalidState):
    """A document already runs under the definition; ``instance_id`` names that instance."""

    def __init__(self, message: str, *, instance_id: str) -> None:
        super().__init__(message)
        self.instance_id = instance_id


class Conflict(WorkflowError):
    pass


class ConfigurationError(WorkflowError):
    pass


class DefinitionInvalid(ConfigurationError):
    pass


class DependencyFailure(WorkflowError):
    def __init__(self, message: str, *, dependency: str) -> None:
        super().__init__(message)
        self.dependency = dependency
