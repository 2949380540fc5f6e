# /chatflow/workflows/errors.py

"""
Error taxonomy for workflow execution.

Recovery decides what to do with a failure by its class:
- GraphConfigurationError / LoopDetected: fatal, never retried
- ResourceUnavailable: transient, retried with backoff
- InputValidationError: re-prompt and stay on the same step
- AuthorizationError: auth message, then fail
- ConcurrencyConflict: another writer won; the caller drops the request
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class GraphConfigurationError(WorkflowError):
    """The flow graph is broken: missing node, missing edge, unknown node type."""


class LoopDetected(WorkflowError):
    """An execution exceeded its step cap."""

    def __init__(self, message: str, node_id: Optional[str] = None, step_count: int = 0):
        super().__init__(message, node_id)
        self.step_count = step_count


class HandlerRuntimeError(WorkflowError):
    """A node handler failed while doing its work."""


class InputValidationError(HandlerRuntimeError):
    """The subject's input did not satisfy the node."""


class AuthorizationError(HandlerRuntimeError):
    """An external system rejected the engine's credentials."""


class ResourceUnavailable(WorkflowError):
    """The store or an external collaborator could not be reached."""


class ConcurrencyConflict(WorkflowError):
    """A conditional write lost a race with another writer."""


class AlreadyRunning(ConcurrencyConflict):
    """An active execution already exists for this flow and subject."""


class ExecutionNotFound(WorkflowError):
    """No execution context with the given id."""
