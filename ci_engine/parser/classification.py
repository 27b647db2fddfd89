"""
Classification
==============
Pure decisions over in-memory data. No I/O, no clocks.

    has_critical_failure(snapshot)  — any failure in the fail-fast set?
    is_retryable(fetch_error)       — transient provider hiccup or fatal?
    classify_check(name, ...)       — map a check's name / output to an ErrorKind

Classification Strategy (classify_check):
    1. EXPLICIT KEYWORD TABLE — ordered, first matching ErrorKind wins
    2. NEVER dynamic inference or LLM

Retry Strategy (is_retryable):
    1. Typed errors decide directly (TransientFetchError / FatalFetchError)
    2. httpx transport errors and 429 / 5xx responses are transient
    3. Message patterns second (timeouts, resets, rate limits, 5xx)
    4. Anything else is fatal
"""
import re
from typing import Optional

import httpx

from ci_engine.core.constants import CRITICAL_ERROR_KINDS, ErrorKind
from ci_engine.core.errors import FatalFetchError, TransientFetchError
from ci_engine.models.check_snapshot import CheckSnapshot


# ---------------------------------------------------------------------------
# 1. Check-name keyword table (order matters: first match wins)
# ---------------------------------------------------------------------------
_KIND_KEYWORDS: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (ErrorKind.TIMEOUT,          ("timed out", "timeout exceeded", "cancelled after")),
    (ErrorKind.TEST_FAILURE,     ("test", "spec", "pytest", "jest", "mocha", "unittest", "vitest")),
    (ErrorKind.LINT_ERROR,       ("lint", "eslint", "pylint", "flake8", "ruff", "format",
                                  "prettier", "black", "autopep8", "gofmt", "rustfmt", "clippy")),
    (ErrorKind.TYPE_ERROR,       ("typecheck", "type-check", "type check", "mypy", "pyright",
                                  "typescript", "tsc")),
    (ErrorKind.SECURITY_FINDING, ("security", "codeql", "secret", "vuln", "audit", "dependency",
                                  "snyk", "trivy", "bandit")),
    (ErrorKind.BUILD_ERROR,      ("build", "compile", "webpack", "babel", "rollup", "vite",
                                  "cargo build", "go build")),
]


def classify_check(name: str, summary: str = "", title: str = "") -> ErrorKind:
    """
    Classify a failed check into an ErrorKind from its name and output.

    The check name is consulted first on its own: a job called "lint" whose
    summary mentions a test file is still a lint failure. Summary and title
    are only used when the name carries no signal.

    Parameters
    ----------
    name : str
        Check run / status context name (e.g. "CI / pytest").
    summary : str
        Check output summary.
    title : str
        Check output title.

    Returns
    -------
    ErrorKind
        The first matching kind, or ErrorKind.UNKNOWN.
    """
    for text in (name.lower(), f"{title} {summary}".lower()):
        if not text.strip():
            continue
        for kind, keywords in _KIND_KEYWORDS:
            if any(kw in text for kw in keywords):
                return kind
    return ErrorKind.UNKNOWN


# ---------------------------------------------------------------------------
# 2. Critical failures
# ---------------------------------------------------------------------------
def is_critical(kind: ErrorKind) -> bool:
    return kind in CRITICAL_ERROR_KINDS


def has_critical_failure(snapshot: Optional[CheckSnapshot]) -> bool:
    """True if any FailureDetail's error_kind is in the critical set."""
    if snapshot is None:
        return False
    return any(is_critical(f.error_kind) for f in snapshot.failure_details)


# ---------------------------------------------------------------------------
# 3. Retryable fetch errors
# ---------------------------------------------------------------------------
_TRANSIENT_PATTERNS: list[re.Pattern] = [
    re.compile(r"timed?\s*out|timeout", re.I),
    re.compile(r"ETIMEDOUT|ECONNRESET|ECONNREFUSED|EAI_AGAIN|ENOTFOUND", re.I),
    re.compile(r"connection (reset|refused|aborted|closed)", re.I),
    re.compile(r"network (error|is unreachable)", re.I),
    re.compile(r"temporarily unavailable|service unavailable|bad gateway|gateway timeout", re.I),
    re.compile(r"rate[\s_-]?limit|too many requests|secondary rate", re.I),
    re.compile(r"\b(?:HTTP(?:/\d(?:\.\d)?)?\s*|status(?:\s+code)?[\s:=]*)5\d\d\b", re.I),
]

_TRANSIENT_STATUS_CODES = frozenset({408, 429})


def _is_transient_status(status_code: Optional[int]) -> bool:
    if status_code is None:
        return False
    return status_code in _TRANSIENT_STATUS_CODES or 500 <= status_code < 600


def is_retryable(fetch_error: BaseException) -> bool:
    """
    Decide whether a fetch error is transient (retry) or fatal (abort).

    Parameters
    ----------
    fetch_error : BaseException
        The error raised by CheckStatusSource.fetch.

    Returns
    -------
    bool
        True for network timeouts, connection errors, rate limits and 5xx.
    """
    if isinstance(fetch_error, TransientFetchError):
        return True
    if isinstance(fetch_error, FatalFetchError):
        return False

    if isinstance(fetch_error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(fetch_error, httpx.HTTPStatusError):
        return _is_transient_status(fetch_error.response.status_code)

    status_code = getattr(fetch_error, "status_code", None)
    if isinstance(status_code, int):
        return _is_transient_status(status_code)

    message = str(fetch_error)
    return any(p.search(message) for p in _TRANSIENT_PATTERNS)
