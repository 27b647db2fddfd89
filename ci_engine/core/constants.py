"""
Constants
Centralised storage for error kinds, fix outcome reasons and checkpoint naming.
"""
from enum import Enum


class ErrorKind(str, Enum):
    """Normalized failure classes a check can be attributed to."""
    TEST_FAILURE = "test-failure"
    LINT_ERROR = "lint-error"
    TYPE_ERROR = "type-error"
    BUILD_ERROR = "build-error"
    SECURITY_FINDING = "security-finding"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Failures that make further waiting pointless (fail-fast set)
CRITICAL_ERROR_KINDS = frozenset({
    ErrorKind.TEST_FAILURE,
    ErrorKind.BUILD_ERROR,
    ErrorKind.SECURITY_FINDING,
})

POLL_STRATEGIES = ("fixed", "exponential", "adaptive")

CHECKPOINT_PREFIX = "ci-engine-checkpoint"

# ---------------------------------------------------------------------------
# Fix attempt reasons (FixAttempt.reason)
# ---------------------------------------------------------------------------
FIXED = "FIXED"
DRY_RUN = "DRY_RUN"
NO_APPLICABLE_ACTION = "NO_APPLICABLE_ACTION"
TOOL_UNAVAILABLE = "TOOL_UNAVAILABLE"
DECLINED = "DECLINED"
REGRESSION = "REGRESSION"
NO_CHANGES = "NO_CHANGES"
EXECUTION_FAILED = "EXECUTION_FAILED"

# Failed result reasons (FailedResult.reason)
CRITICAL_FAILURE = "critical_failure"
CHECKS_FAILED = "checks_failed"
REMEDIATION_EXHAUSTED = "remediation_exhausted"
PUBLISH_FAILED = "publish_failed"

# Orchestrator states
POLLING = "polling"
REMEDIATING = "remediating"
SUCCEEDED = "succeeded"
FAILED = "failed"
TIMED_OUT = "timed_out"
