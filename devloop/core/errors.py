"""Exception taxonomy shared by the agent loop and its collaborators.

Completion errors carry enough classification for the retry policy:
``retryable`` errors are retried with backoff, terminal ones surface
immediately with the backend's own message attached.
"""
from __future__ import annotations


class DevloopError(Exception):
    """Base class for every error raised by devloop."""


class ConfigurationError(DevloopError):
    """Misconfiguration detected while constructing a component."""


class CompletionError(DevloopError):
    retryable = False
    kind = "completion"

    def __init__(self, message: str, *, status_code: int | None = None, backend_message: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.backend_message = backend_message


class TransientCompletionError(CompletionError):
    retryable = True
    kind = "transient"


class TerminalCompletionError(CompletionError):
    kind = "terminal"


class QuotaExceededError(TerminalCompletionError):
    kind = "quota"


class AuthenticationError(TerminalCompletionError):
    kind = "auth"


class BadRequestError(TerminalCompletionError):
    kind = "bad_request"


class ExtractionError(DevloopError, ValueError):
    """No structured value could be recovered from a completion."""


class PlanError(DevloopError):
    pass


class InvalidTransitionError(PlanError):
    pass


class PlanDeadlockError(PlanError):
    """Every pending step is blocked and forced progress is disabled."""


class CollaboratorError(DevloopError):
    """A browser, file-system or computer-control collaborator failed."""
    kind = "collaborator"


class CommandBlockedError(CollaboratorError):
    kind = "blocked_command"


class MemoryStoreError(DevloopError):
    pass


class PersistenceError(MemoryStoreError):
    pass


class TaskAlreadyRunningError(DevloopError):
    pass


def error_kind(exc: BaseException) -> str:
    """Classify an exception for ``ActionResult.error_kind``."""
    if isinstance(exc, (CompletionError, CollaboratorError)):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return "timeout"
    return "internal"
