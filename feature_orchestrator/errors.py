"""Custom exception hierarchy for the orchestrator."""

from __future__ import annotations

from pydantic import BaseModel


class OrchestratorError(Exception):
    """Base exception for the orchestrator."""


class AlreadyRunningError(OrchestratorError):
    """A feature (or the auto-loop) is already running."""

    def __init__(self, feature_id: str | None = None):
        self.feature_id = feature_id
        super().__init__("already running")


class FeatureNotFoundError(OrchestratorError):
    """Feature record does not exist on disk."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature {feature_id} not found")


class FeatureExecutionError(OrchestratorError):
    """Error during feature execution."""

    def __init__(self, feature_id: str, message: str, retriable: bool = True):
        self.feature_id = feature_id
        self.retriable = retriable
        super().__init__(message)


class AgentError(FeatureExecutionError):
    """The agent stream reported an error (auth, quota, malformed response)."""


class TaskExecutionError(FeatureExecutionError):
    """One or more planned tasks failed."""


class DependencyCycleError(TaskExecutionError):
    """Pending tasks can never become ready."""


class ApprovalError(FeatureExecutionError):
    """Plan approval could not be obtained."""


class ApprovalTimeoutError(ApprovalError):
    """Human did not respond to a plan approval request within the timeout."""


class FeatureAbortedError(OrchestratorError):
    """Execution was cancelled by the user. Not a failure."""


class PlanCancelledError(FeatureAbortedError):
    """Plan was rejected without feedback or edits."""


class AutoLoopAlreadyRunningError(OrchestratorError):
    """start_auto_loop was called while the loop is active."""

    def __init__(self) -> None:
        super().__init__("Auto mode is already running")


class StateCorruptionError(OrchestratorError):
    """A feature.json or state file is corrupted."""


class ProjectLockedError(OrchestratorError):
    """Another live orchestrator process owns this project's feature runs."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Project is owned by a running orchestrator (pid {pid})")


class ErrorInfo(BaseModel):
    type: str
    message: str
    is_abort: bool = False


_QUOTA_KEYWORDS = ("quota", "usage limit", "insufficient credit", "credit balance")
_RATE_LIMIT_KEYWORDS = ("rate limit", "rate_limit", "too many requests", "429")
_AUTH_KEYWORDS = ("authentication", "invalid api key", "unauthorized", "401")


def classify_error(error: BaseException) -> ErrorInfo:
    """Map an exception to a coarse error category for reporting and the breaker."""
    message = str(error) or type(error).__name__
    lowered = message.lower()

    if isinstance(error, PlanCancelledError):
        return ErrorInfo(type="cancellation", message=message, is_abort=True)
    if isinstance(error, FeatureAbortedError):
        return ErrorInfo(type="abort", message=message, is_abort=True)
    if any(kw in lowered for kw in _QUOTA_KEYWORDS):
        return ErrorInfo(type="quota_exhausted", message=message)
    if any(kw in lowered for kw in _RATE_LIMIT_KEYWORDS):
        return ErrorInfo(type="rate_limit", message=message)
    if any(kw in lowered for kw in _AUTH_KEYWORDS):
        return ErrorInfo(type="authentication", message=message)
    if isinstance(error, FeatureExecutionError):
        return ErrorInfo(type="execution", message=message)
    return ErrorInfo(type="unknown", message=message)
