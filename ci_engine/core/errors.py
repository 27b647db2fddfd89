"""
Engine Errors
=============
Structured exception hierarchy for the CI sync / remediation engine.

Every error carries:
    code        — stable machine-readable identifier
    message     — human-readable text
    details     — optional context dict
    suggestions — actionable hints for the operator

Propagation Policy:
    Only FatalFetchError and EngineTimeoutError (plus caller cancellation)
    leave the engine abnormally. Everything else is resolved into one of the
    three terminal Result kinds.
"""
from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.suggestions = suggestions or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "suggestions": self.suggestions,
        }


# ---------------------------------------------------------------------------
# Fetch errors (CheckStatusSource)
# ---------------------------------------------------------------------------
class FetchError(EngineError):
    """A check-status fetch failed."""

    code = "FETCH_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message, details, suggestions)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Network blip, rate limit or 5xx. Retried with the polling backoff."""

    code = "TRANSIENT_FETCH_ERROR"


class FatalFetchError(FetchError):
    """Auth failure, unknown revision, or an exhausted retry budget."""

    code = "FATAL_FETCH_ERROR"


# ---------------------------------------------------------------------------
# Remediation errors
# ---------------------------------------------------------------------------
class RemediationRegressionError(EngineError):
    """A fix increased the error count. Internal only; always rolled back."""

    code = "REMEDIATION_REGRESSION"

    def __init__(self, errors_before: int, errors_after: int) -> None:
        super().__init__(
            f"Fix regressed the workspace ({errors_before} -> {errors_after} errors)",
            details={"errors_before": errors_before, "errors_after": errors_after},
        )
        self.errors_before = errors_before
        self.errors_after = errors_after


class ToolUnavailableError(EngineError):
    """No tool for any candidate fix action is installed."""

    code = "TOOL_UNAVAILABLE"

    def __init__(self, tools: List[str], install_hints: List[str]) -> None:
        names = ", ".join(tools) or "none"
        super().__init__(
            f"No fix tool available (tried: {names})",
            details={"tools": tools},
            suggestions=install_hints,
        )
        self.tools = tools


class ProcessExecutionError(EngineError):
    """A fix or verifier subprocess could not be started."""

    code = "PROCESS_EXECUTION_ERROR"


class ProcessTimeoutError(ProcessExecutionError):
    """A fix or verifier subprocess exceeded its time budget and was killed."""

    code = "PROCESS_TIMEOUT"


class WorkspaceError(EngineError):
    """A git operation on the working tree failed."""

    code = "WORKSPACE_ERROR"


class WorkspaceBusyError(WorkspaceError):
    """Another poll/fix pair is already active on this working tree."""

    code = "WORKSPACE_BUSY"


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------
class EngineTimeoutError(EngineError):
    """The caller's overall deadline elapsed. Carries the last-known snapshot."""

    code = "ENGINE_TIMEOUT"

    def __init__(self, message: str, last_snapshot: Any = None) -> None:
        super().__init__(message)
        self.last_snapshot = last_snapshot
