"""
Failure Parser
==============
Converts raw CI log text into structured diagnostic fragments.

Pipeline:
    1. Try each registered extractor in fixed priority order
    2. First extractor whose pattern matches wins
    3. Normalize affected file paths (repo-relative, forward slashes)
    4. Attach a suggested fix for the detected ErrorKind
    5. Nothing matched → ErrorKind.UNKNOWN, no files, raw text as summary

Registry (priority order):
    pytest, jest, go test, mypy, tsc, ruff/flake8, formatter check,
    eslint, dependency audit, python traceback, node stack trace,
    compiler (gcc / rustc), job timeout

Contract:
    - DETERMINISTIC: same log → same fragment, always.
    - No LLM allowed in this layer.
    - Regex and heuristic pattern matching only.
    - Tolerant: an extractor that raises is skipped, never crashes the caller.
    - Open/closed: new formats are added with register_extractor(),
      existing extractors are never edited to support them.
"""
import re
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ci_engine.core.constants import ErrorKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Diagnostic Fragment
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DiagnosticFragment:
    """The part of a FailureDetail that can be recovered from log text."""
    error_kind: ErrorKind
    affected_files: tuple = ()
    summary: str = ""
    suggested_fix: Optional[str] = None
    extractor: str = "fallback"


Extractor = Callable[[str], Optional[DiagnosticFragment]]


# ---------------------------------------------------------------------------
# Path Ignore Rules
# ---------------------------------------------------------------------------
_IGNORE_PATTERNS: list[str] = [
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    "site-packages",
    "dist-packages",
    ".tox",
    ".git",
]


def _should_ignore(file_path: str) -> bool:
    """Return True if the file path is in an ignored directory."""
    normalized = file_path.replace("\\", "/")
    for pattern in _IGNORE_PATTERNS:
        if f"/{pattern}/" in f"/{normalized}/":
            return True
    return False


# ---------------------------------------------------------------------------
# Path Normalization
# ---------------------------------------------------------------------------
_RUNNER_PREFIXES = re.compile(r"^/(?:home/runner/work/[^/]+/[^/]+|github/workspace|workspace)/")


def normalize_path(raw_path: str, workspace_path: str = "") -> str:
    """
    Convert an absolute or messy path to a clean workspace-relative path.

    Steps:
        1. Strip quotes and whitespace, replace backslashes
        2. Remove workspace prefix if present
        3. Remove CI runner checkout prefixes (/home/runner/work/<repo>/<repo>/)
        4. Remove leading "./" and slashes
    """
    path = raw_path.strip().strip("'\"")
    path = path.replace("\\", "/")

    if workspace_path:
        ws = workspace_path.replace("\\", "/").rstrip("/")
        if path.startswith(ws + "/"):
            path = path[len(ws):]

    path = _RUNNER_PREFIXES.sub("", path)

    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def _collect_files(paths: Iterable[str]) -> tuple:
    files = set()
    for raw in paths:
        path = normalize_path(raw)
        if path and not _should_ignore(path):
            files.add(path)
    return tuple(sorted(files))


def _first_lines(text: str, limit: int = 5) -> str:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    return "\n".join(lines[:limit])


# ---------------------------------------------------------------------------
# Suggested fixes
# ---------------------------------------------------------------------------
def suggest_fix(kind: ErrorKind, files: Iterable[str] = (), summary: str = "") -> Optional[str]:
    """Return a human-readable next step for a failure, or None."""
    files = list(files)
    joined = " ".join(files)
    has_python = any(f.endswith(".py") for f in files)
    has_node = any(f.endswith((".ts", ".tsx", ".js", ".jsx")) for f in files)

    if kind == ErrorKind.TEST_FAILURE:
        if has_python:
            return f"pytest {joined} -v"
        if has_node:
            return f"npm test -- {joined}"
        return "Re-run the failing tests locally"
    if kind == ErrorKind.LINT_ERROR:
        if has_python:
            return f"ruff check --fix {joined}"
        if has_node:
            return f"npx eslint --fix {joined}"
        return "Run the project's formatter / linter with autofix"
    if kind == ErrorKind.TYPE_ERROR:
        return f"mypy {joined}".strip() if has_python else "npx tsc --noEmit"
    if kind == ErrorKind.BUILD_ERROR:
        return "Reproduce the build locally and fix the first compiler error"
    if kind == ErrorKind.SECURITY_FINDING:
        lowered = summary.lower()
        if "secret" in lowered:
            return "Review and remove secrets from code"
        if "vulnerab" in lowered or "dependency" in lowered:
            return "pip-audit --fix" if has_python or "requirements" in joined else "npm audit fix"
        return "Review security scan findings"
    if kind == ErrorKind.TIMEOUT:
        return "Check for hanging tests or raise the job timeout"
    return None


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------
# pytest: FAILED tests/test_auth.py::test_login - AssertionError
_PYTEST_FAILED = re.compile(r"^(?:FAILED|ERROR)\s+(\S+?\.py)(?:::(\S+))?", re.MULTILINE)
_PYTEST_SUMMARY = re.compile(r"=+ .*?(\d+) (?:failed|errors?)\b.*?=+", re.IGNORECASE)


def _extract_pytest(log: str) -> Optional[DiagnosticFragment]:
    failed = list(_PYTEST_FAILED.finditer(log))
    if not failed:
        return None
    files = _collect_files(m.group(1) for m in failed)
    names = [f"{m.group(1)}::{m.group(2)}" if m.group(2) else m.group(1) for m in failed]
    summary_match = _PYTEST_SUMMARY.search(log)
    count = summary_match.group(1) if summary_match else str(len(names))
    return DiagnosticFragment(
        error_kind=ErrorKind.TEST_FAILURE,
        affected_files=files,
        summary=f"pytest: {count} failed ({', '.join(names[:5])})",
        extractor="pytest",
    )


# jest: FAIL src/components/Button.test.tsx
_JEST_FAIL = re.compile(r"^\s*FAIL\s+(\S+\.(?:[jt]sx?|mjs|cjs))\s*$", re.MULTILINE)
_JEST_TESTS = re.compile(r"^Tests:\s+(\d+) failed", re.MULTILINE)


def _extract_jest(log: str) -> Optional[DiagnosticFragment]:
    failed = list(_JEST_FAIL.finditer(log))
    if not failed:
        return None
    files = _collect_files(m.group(1) for m in failed)
    tests = _JEST_TESTS.search(log)
    count = tests.group(1) if tests else "some"
    return DiagnosticFragment(
        error_kind=ErrorKind.TEST_FAILURE,
        affected_files=files,
        summary=f"jest: {count} test(s) failed in {len(files)} suite(s)",
        extractor="jest",
    )


# go test: --- FAIL: TestParse (0.00s)  /  parser_test.go:42: expected ...
_GO_FAIL = re.compile(r"^\s*--- FAIL: (\S+)", re.MULTILINE)
_GO_TEST_FILE = re.compile(r"(\S+_test\.go):\d+:")


def _extract_go_test(log: str) -> Optional[DiagnosticFragment]:
    failed = _GO_FAIL.findall(log)
    if not failed:
        return None
    files = _collect_files(_GO_TEST_FILE.findall(log))
    return DiagnosticFragment(
        error_kind=ErrorKind.TEST_FAILURE,
        affected_files=files,
        summary=f"go test: {len(failed)} failed ({', '.join(failed[:5])})",
        extractor="go_test",
    )


# mypy: app/models/user.py:12: error: Incompatible types in assignment  [assignment]
_MYPY_ERROR = re.compile(r"^(\S+\.pyi?):(\d+)(?::\d+)?: error: (.+)$", re.MULTILINE)


def _extract_mypy(log: str) -> Optional[DiagnosticFragment]:
    errors = list(_MYPY_ERROR.finditer(log))
    if not errors:
        return None
    files = _collect_files(m.group(1) for m in errors)
    return DiagnosticFragment(
        error_kind=ErrorKind.TYPE_ERROR,
        affected_files=files,
        summary=f"mypy: {len(errors)} error(s); first: {errors[0].group(3).strip()}",
        extractor="mypy",
    )


# tsc: src/components/Button.tsx(45,12): error TS2322: Type 'string' is not ...
_TSC_ERROR = re.compile(r"^(\S+\.(?:ts|tsx|mts|cts))\((\d+),(\d+)\): error (TS\d+): (.+)$", re.MULTILINE)


def _extract_tsc(log: str) -> Optional[DiagnosticFragment]:
    errors = list(_TSC_ERROR.finditer(log))
    if not errors:
        return None
    files = _collect_files(m.group(1) for m in errors)
    first = errors[0]
    return DiagnosticFragment(
        error_kind=ErrorKind.TYPE_ERROR,
        affected_files=files,
        summary=f"tsc: {len(errors)} error(s); first: {first.group(4)} {first.group(5).strip()}",
        extractor="tsc",
    )


# ruff / flake8: app/main.py:3:1: F401 [*] `os` imported but unused
_PY_LINT = re.compile(r"^(\S+\.pyi?):(\d+):(\d+): ([A-Z]{1,4}\d{2,4})\b(.*)$", re.MULTILINE)


def _extract_python_lint(log: str) -> Optional[DiagnosticFragment]:
    findings = list(_PY_LINT.finditer(log))
    if not findings:
        return None
    files = _collect_files(m.group(1) for m in findings)
    codes = sorted({m.group(4) for m in findings})
    return DiagnosticFragment(
        error_kind=ErrorKind.LINT_ERROR,
        affected_files=files,
        summary=f"lint: {len(findings)} violation(s) ({', '.join(codes[:8])})",
        extractor="python_lint",
    )


# black / ruff format --check: "would reformat app/main.py"
# prettier --check: "[warn] src/index.ts"
_WOULD_REFORMAT = re.compile(r"^\s*would reformat:? (\S+)", re.MULTILINE | re.IGNORECASE)
_PRETTIER_WARN = re.compile(r"^\[warn\] (\S+\.\w+)\s*$", re.MULTILINE)


def _extract_formatter_check(log: str) -> Optional[DiagnosticFragment]:
    paths = _WOULD_REFORMAT.findall(log) + _PRETTIER_WARN.findall(log)
    if not paths:
        return None
    files = _collect_files(paths)
    return DiagnosticFragment(
        error_kind=ErrorKind.LINT_ERROR,
        affected_files=files,
        summary=f"format: {len(files)} file(s) need reformatting",
        extractor="formatter_check",
    )


# eslint (stylish):
#   /home/runner/work/app/app/src/index.js
#     12:5  error  'x' is assigned a value but never used  no-unused-vars
_ESLINT_FILE = re.compile(r"^(/?\S+\.(?:[jt]sx?|mjs|cjs|vue))\s*$")
_ESLINT_PROBLEM = re.compile(r"^\s+\d+:\d+\s+(error|warning)\s+")


def _extract_eslint(log: str) -> Optional[DiagnosticFragment]:
    files: list[str] = []
    problems = 0
    current: Optional[str] = None
    for line in log.splitlines():
        file_match = _ESLINT_FILE.match(line)
        if file_match:
            current = file_match.group(1)
            continue
        if current and _ESLINT_PROBLEM.match(line):
            problems += 1
            if current not in files:
                files.append(current)
        elif not line.strip():
            current = None
    if not problems:
        return None
    return DiagnosticFragment(
        error_kind=ErrorKind.LINT_ERROR,
        affected_files=_collect_files(files),
        summary=f"eslint: {problems} problem(s)",
        extractor="eslint",
    )


# npm audit / pip-audit / bandit
_NPM_AUDIT = re.compile(r"\b(?:found )?(\d+) (?:\w+ severity )?vulnerabilit", re.IGNORECASE)
_PIP_AUDIT = re.compile(r"Found (\d+) known vulnerabilit", re.IGNORECASE)
_BANDIT_ISSUE = re.compile(r">> Issue: \[(B\d+)[^\]]*\].*?Location: (\S+?\.py):\d+", re.DOTALL)
_SECRET_HIT = re.compile(r"(?:secret|credential|private key) (?:detected|found)", re.IGNORECASE)


def _extract_security(log: str) -> Optional[DiagnosticFragment]:
    pip = _PIP_AUDIT.search(log)
    if pip and int(pip.group(1)) > 0:
        return DiagnosticFragment(
            error_kind=ErrorKind.SECURITY_FINDING,
            affected_files=("requirements.txt",),
            summary=f"pip-audit: {pip.group(1)} known vulnerable dependency version(s)",
            extractor="pip_audit",
        )
    npm = _NPM_AUDIT.search(log)
    if npm and int(npm.group(1)) > 0:
        return DiagnosticFragment(
            error_kind=ErrorKind.SECURITY_FINDING,
            affected_files=("package-lock.json",),
            summary=f"npm audit: {npm.group(1)} dependency vulnerabilities",
            extractor="npm_audit",
        )
    bandit = list(_BANDIT_ISSUE.finditer(log))
    if bandit:
        return DiagnosticFragment(
            error_kind=ErrorKind.SECURITY_FINDING,
            affected_files=_collect_files(m.group(2) for m in bandit),
            summary=f"bandit: {len(bandit)} issue(s) ({', '.join(sorted({m.group(1) for m in bandit}))})",
            extractor="bandit",
        )
    if _SECRET_HIT.search(log):
        return DiagnosticFragment(
            error_kind=ErrorKind.SECURITY_FINDING,
            summary="secret scan: potential secret committed",
            extractor="secret_scan",
        )
    return None


# Python traceback: File "app/models/user.py", line 123 ... ValueError: bad
_PY_TRACEBACK = re.compile(r'File\s+"([^"]+)",\s+line\s+(\d+)')
_PY_ERROR_LABEL = re.compile(r"^(\w+(?:Error|Exception)):\s*(.*)$", re.MULTILINE)
_PY_BUILD_ERRORS = frozenset({
    "SyntaxError", "IndentationError", "TabError", "ImportError", "ModuleNotFoundError",
})


def _extract_python_traceback(log: str) -> Optional[DiagnosticFragment]:
    frames = _PY_TRACEBACK.findall(log)
    if not frames:
        return None
    label = _PY_ERROR_LABEL.search(log)
    error_name = label.group(1) if label else "Exception"
    message = label.group(2).strip() if label else ""
    kind = ErrorKind.BUILD_ERROR if error_name in _PY_BUILD_ERRORS else ErrorKind.TEST_FAILURE
    return DiagnosticFragment(
        error_kind=kind,
        affected_files=_collect_files(path for path, _ in frames),
        summary=f"{error_name}: {message}".strip().rstrip(":"),
        extractor="python_traceback",
    )


# Node stack: at Object.<anonymous> (src/app.js:12:5)
_NODE_ERROR = re.compile(r"^\s*((?:Type|Reference|Syntax|Range)Error|Error): (.+)$", re.MULTILINE)
_NODE_FRAME = re.compile(r"^\s+at .*?\(?([^\s()]+\.(?:[jt]sx?|mjs|cjs)):\d+:\d+\)?\s*$", re.MULTILINE)


def _extract_node_stack(log: str) -> Optional[DiagnosticFragment]:
    error = _NODE_ERROR.search(log)
    frames = _NODE_FRAME.findall(log)
    if not error or not frames:
        return None
    files = _collect_files(f for f in frames if not f.startswith(("node:", "internal/")))
    kind = ErrorKind.BUILD_ERROR if error.group(1) == "SyntaxError" else ErrorKind.TEST_FAILURE
    return DiagnosticFragment(
        error_kind=kind,
        affected_files=files,
        summary=f"{error.group(1)}: {error.group(2).strip()}",
        extractor="node_stack",
    )


# gcc / clang: src/main.c:10:5: error: expected ';'
# rustc:       error[E0308]: mismatched types  -->  src/main.rs:3:5
_COMPILER_ERROR = re.compile(r"^(\S+?):(\d+)(?::\d+)?: (?:fatal )?error: (.+)$", re.MULTILINE)
_RUSTC_ERROR = re.compile(r"^error(?:\[(E\d+)\])?: (.+)$", re.MULTILINE)
_RUSTC_LOCATION = re.compile(r"^\s*--> (\S+\.rs):\d+:\d+", re.MULTILINE)


def _extract_compiler(log: str) -> Optional[DiagnosticFragment]:
    compiler = list(_COMPILER_ERROR.finditer(log))
    if compiler:
        return DiagnosticFragment(
            error_kind=ErrorKind.BUILD_ERROR,
            affected_files=_collect_files(m.group(1) for m in compiler),
            summary=f"compile: {len(compiler)} error(s); first: {compiler[0].group(3).strip()}",
            extractor="compiler",
        )
    rust = _RUSTC_ERROR.search(log)
    locations = _RUSTC_LOCATION.findall(log)
    if rust and locations:
        return DiagnosticFragment(
            error_kind=ErrorKind.BUILD_ERROR,
            affected_files=_collect_files(locations),
            summary=f"rustc: {rust.group(2).strip()}",
            extractor="rustc",
        )
    return None


# GitHub Actions: "The job running on runner X has exceeded the maximum execution time of 360 minutes."
_JOB_TIMEOUT = re.compile(
    r"exceeded the maximum execution time|timed out after \d+|##\[error\]The operation was canceled",
    re.IGNORECASE,
)


def _extract_timeout(log: str) -> Optional[DiagnosticFragment]:
    match = _JOB_TIMEOUT.search(log)
    if not match:
        return None
    return DiagnosticFragment(
        error_kind=ErrorKind.TIMEOUT,
        summary=f"job timeout: {match.group(0)}",
        extractor="timeout",
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
_EXTRACTORS: list[tuple[str, Extractor]] = [
    ("pytest", _extract_pytest),
    ("jest", _extract_jest),
    ("go_test", _extract_go_test),
    ("mypy", _extract_mypy),
    ("tsc", _extract_tsc),
    ("python_lint", _extract_python_lint),
    ("formatter_check", _extract_formatter_check),
    ("eslint", _extract_eslint),
    ("security", _extract_security),
    ("python_traceback", _extract_python_traceback),
    ("node_stack", _extract_node_stack),
    ("compiler", _extract_compiler),
    ("timeout", _extract_timeout),
]


def register_extractor(name: str, extractor: Extractor, before: Optional[str] = None) -> None:
    """
    Register a new log-format extractor.

    Parameters
    ----------
    name : str
        Unique extractor name.
    extractor : Extractor
        Pure function: log text → DiagnosticFragment, or None when it does not match.
    before : str | None
        Insert ahead of this registered extractor; append at the end when None.
    """
    if any(existing == name for existing, _ in _EXTRACTORS):
        raise ValueError(f"Extractor already registered: {name}")
    if before is None:
        _EXTRACTORS.append((name, extractor))
        return
    for index, (existing, _) in enumerate(_EXTRACTORS):
        if existing == before:
            _EXTRACTORS.insert(index, (name, extractor))
            return
    raise KeyError(f"Unknown extractor: {before}")


def unregister_extractor(name: str) -> None:
    """Remove a previously registered extractor (mainly for tests)."""
    _EXTRACTORS[:] = [(n, e) for n, e in _EXTRACTORS if n != name]


def registered_extractors() -> list[str]:
    return [name for name, _ in _EXTRACTORS]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def extract_diagnostics(raw_log: str) -> DiagnosticFragment:
    """
    Parse free-text CI output into a DiagnosticFragment.

    Parameters
    ----------
    raw_log : str
        Check output text / job log.

    Returns
    -------
    DiagnosticFragment
        First matching extractor's fragment with a suggested fix attached,
        or ErrorKind.UNKNOWN with the raw text as summary. Never raises.
    """
    if not raw_log or not raw_log.strip():
        return DiagnosticFragment(error_kind=ErrorKind.UNKNOWN, summary="")

    for name, extractor in list(_EXTRACTORS):
        try:
            fragment = extractor(raw_log)
        except Exception as e:
            logger.warning("Extractor %s failed: %s", name, e, exc_info=True)
            continue
        if fragment is None:
            continue
        if fragment.suggested_fix is None:
            hint = suggest_fix(fragment.error_kind, fragment.affected_files, fragment.summary)
            fragment = DiagnosticFragment(
                error_kind=fragment.error_kind,
                affected_files=fragment.affected_files,
                summary=fragment.summary,
                suggested_fix=hint,
                extractor=fragment.extractor,
            )
        logger.debug("Extractor %s matched (%s)", name, fragment.error_kind.value)
        return fragment

    return DiagnosticFragment(error_kind=ErrorKind.UNKNOWN, summary=raw_log.strip())


# ---------------------------------------------------------------------------
# Error counting (verifier output)
# ---------------------------------------------------------------------------
_COUNT_SUMMARIES: list[re.Pattern] = [
    re.compile(r"\bFound (\d+) errors?\b"),                         # ruff, mypy
    re.compile(r"\b(\d+) problems?\b"),                             # eslint
    re.compile(r"\b(?:found )?(\d+) (?:\w+ severity )?vulnerabilit", re.I),  # npm audit
    re.compile(r"\bFound (\d+) known vulnerabilit", re.I),          # pip-audit
    re.compile(r"\b(\d+) files? would be reformatted\b"),           # black, ruff format
]
_LOCATION_LINE = re.compile(r"^\S+?(?::\d+(?::\d+)?:|\(\d+,\d+\): error)\s", re.MULTILINE)


def count_diagnostics(output: str, exit_code: int, count_lines: bool = False) -> int:
    """
    Count the errors a verifier run reported.

    Parameters
    ----------
    output : str
        Combined stdout + stderr of the verifier.
    exit_code : int
        Verifier exit code.
    count_lines : bool
        Count every non-empty output line (for tools like `gofmt -l` that
        list offending files and exit 0).

    Returns
    -------
    int
        Error count, >= 1 whenever the verifier exited non-zero.
    """
    text = output or ""
    if count_lines:
        count = sum(1 for line in text.splitlines() if line.strip())
        return max(count, 1 if exit_code != 0 else 0)

    for pattern in _COUNT_SUMMARIES:
        match = pattern.search(text)
        if match:
            return max(int(match.group(1)), 1 if exit_code != 0 else 0)

    location_lines = {line for line in text.splitlines() if _LOCATION_LINE.match(line)}
    if location_lines:
        return len(location_lines)

    reformat = _WOULD_REFORMAT.findall(text)
    if reformat:
        return len(reformat)

    return 1 if exit_code != 0 else 0
