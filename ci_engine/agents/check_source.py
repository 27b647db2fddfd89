"""
Check Status Source
===================
Fetches the check state of one revision and normalizes it to a CheckSnapshot.

CheckStatusSource is the narrow interface the poller consumes:
    async fetch(revision) -> CheckSnapshot      (raises FetchError)

GitHubCheckSource merges two GitHub APIs into one snapshot:
    GET /repos/{owner}/{repo}/commits/{sha}/check-runs   (GitHub Actions, apps)
    GET /repos/{owner}/{repo}/commits/{sha}/status       (legacy commit statuses)

Normalization:
    check run  completed + success                      → passed
               completed + skipped / neutral / stale    → skipped
               completed + failure / timed_out /
                           cancelled / action_required  → failed
               queued / in_progress / waiting           → pending
    status     success → passed, failure / error → failed, pending → pending

Error mapping:
    401, 404, 422 and other 4xx   → FatalFetchError
    403 rate limited, 408, 429    → TransientFetchError
    5xx, network, timeouts        → TransientFetchError
"""
import re
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from ci_engine.core.constants import ErrorKind
from ci_engine.core.errors import FatalFetchError, TransientFetchError
from ci_engine.models.check_snapshot import CheckSnapshot, FailureDetail
from ci_engine.parser.classification import classify_check
from ci_engine.parser.failure_parser import extract_diagnostics, suggest_fix

logger = logging.getLogger(__name__)


class CheckStatusSource(Protocol):
    async def fetch(self, revision: str) -> CheckSnapshot:
        ...


_PASSED_CONCLUSIONS = frozenset({"success"})
_SKIPPED_CONCLUSIONS = frozenset({"skipped", "neutral", "stale"})
_FAILED_CONCLUSIONS = frozenset({"failure", "timed_out", "cancelled", "action_required", "startup_failure"})

_STATUS_STATES = {
    "success": "passed",
    "failure": "failed",
    "error": "failed",
    "pending": "pending",
}


def extract_repo_path(repo_url: str) -> str:
    """Extract 'owner/repo' from a GitHub URL (https or ssh)."""
    match = re.search(r"github\.com[:/](.+?)(?:\.git)?/?$", repo_url.strip())
    if match:
        return match.group(1).rstrip("/")
    return ""


def normalize_check_run(run: Dict[str, Any]) -> str:
    """Map a check run's status / conclusion to passed, failed, skipped or pending."""
    if run.get("status") != "completed":
        return "pending"
    conclusion = (run.get("conclusion") or "").lower()
    if conclusion in _PASSED_CONCLUSIONS:
        return "passed"
    if conclusion in _SKIPPED_CONCLUSIONS:
        return "skipped"
    if conclusion in _FAILED_CONCLUSIONS:
        return "failed"
    return "pending"


def _failure_from_run(run: Dict[str, Any]) -> FailureDetail:
    name = run.get("name") or "unknown"
    output = run.get("output") or {}
    title = output.get("title") or ""
    summary = output.get("summary") or ""
    text = output.get("text") or ""

    fragment = extract_diagnostics("\n".join(p for p in (text, summary) if p))
    kind = classify_check(name, summary, title)
    if kind == ErrorKind.UNKNOWN:
        kind = fragment.error_kind
    if (run.get("conclusion") or "") == "timed_out":
        kind = ErrorKind.TIMEOUT

    description = title or fragment.summary or summary or f"{name} failed"
    return FailureDetail(
        check_name=name,
        error_kind=kind,
        affected_files=fragment.affected_files,
        summary=description,
        suggested_fix=fragment.suggested_fix or suggest_fix(kind, fragment.affected_files, description),
        url=run.get("html_url") or run.get("details_url"),
    )


def _failure_from_status(status: Dict[str, Any]) -> FailureDetail:
    name = status.get("context") or "unknown"
    description = status.get("description") or f"{name} failed"
    kind = classify_check(name, description)
    return FailureDetail(
        check_name=name,
        error_kind=kind,
        summary=description,
        suggested_fix=suggest_fix(kind, (), description),
        url=status.get("target_url"),
    )


def build_snapshot(check_runs: List[Dict[str, Any]], statuses: List[Dict[str, Any]]) -> CheckSnapshot:
    """
    Merge raw check runs and commit statuses into one CheckSnapshot.

    Names are unique within a snapshot: the first occurrence wins (GitHub
    returns the latest check run / status first).
    """
    counts = {"passed": 0, "failed": 0, "pending": 0, "skipped": 0}
    failures: List[FailureDetail] = []
    passed_names: List[str] = []
    seen = set()

    for run in check_runs:
        name = run.get("name") or "unknown"
        if name in seen:
            continue
        seen.add(name)
        state = normalize_check_run(run)
        counts[state] += 1
        if state == "failed":
            failures.append(_failure_from_run(run))
        elif state == "passed":
            passed_names.append(name)

    for status in statuses:
        name = status.get("context") or "unknown"
        if name in seen:
            continue
        seen.add(name)
        state = _STATUS_STATES.get((status.get("state") or "").lower(), "pending")
        counts[state] += 1
        if state == "failed":
            failures.append(_failure_from_status(status))
        elif state == "passed":
            passed_names.append(name)

    return CheckSnapshot(
        total=sum(counts.values()),
        failure_details=tuple(failures),
        passed_names=tuple(passed_names),
        **counts,
    )


class GitHubCheckSource:
    """
    CheckStatusSource backed by the GitHub REST API.

    One instance serves one repository; the httpx client is created lazily
    and reused across fetches. Use `async with` or call aclose() when done.
    """

    def __init__(
        self,
        repo_url: str,
        token: str = "",
        api_url: str = "https://api.github.com",
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.repo_path = extract_repo_path(repo_url)
        if not self.repo_path:
            raise FatalFetchError(
                f"Could not extract repo path from {repo_url}",
                suggestions=["Use a URL like https://github.com/<owner>/<repo>"],
            )
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "ci-remediation-engine",
        }
        if token:
            self.headers["Authorization"] = f"token {token}"
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "GitHubCheckSource":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers, timeout=self.timeout)
        return self._client

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.api_url}/repos/{self.repo_path}{path}"
        try:
            response = await self._get_client().get(url, params=params, headers=self.headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as http_err:
            raise _map_status_error(http_err) from http_err
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"GitHub request timed out: {url}") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"GitHub network error: {e}") from e
        except ValueError as e:
            raise TransientFetchError(f"GitHub returned malformed JSON for {url}") from e

    async def fetch(self, revision: str) -> CheckSnapshot:
        """Fetch and normalize the check state of `revision`."""
        runs_data = await self._get_json(
            f"/commits/{revision}/check-runs", params={"per_page": 100, "filter": "latest"}
        )
        status_data = await self._get_json(f"/commits/{revision}/status", params={"per_page": 100})

        snapshot = build_snapshot(runs_data.get("check_runs", []), status_data.get("statuses", []))
        logger.debug(
            "Fetched %s@%s: total=%d passed=%d failed=%d pending=%d skipped=%d",
            self.repo_path, revision[:8], snapshot.total, snapshot.passed,
            snapshot.failed, snapshot.pending, snapshot.skipped,
        )
        return snapshot


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    if "retry-after" in response.headers:
        return True
    return "rate limit" in response.text.lower()


def _map_status_error(http_err: httpx.HTTPStatusError) -> Exception:
    response = http_err.response
    status_code = response.status_code
    url = str(http_err.request.url)

    if status_code in (408, 429) or (status_code == 403 and _is_rate_limited(response)):
        logger.warning("GitHub rate limited / throttled (HTTP %d)", status_code)
        return TransientFetchError(f"HTTP {status_code} (rate limit) for {url}", status_code=status_code)
    if status_code >= 500:
        return TransientFetchError(f"HTTP {status_code} server error for {url}", status_code=status_code)

    suggestions: Tuple[str, ...] = ()
    if status_code == 401:
        suggestions = ("Check GITHUB_TOKEN is set and valid",)
    elif status_code == 404:
        suggestions = ("Check the repository URL and that the revision has been pushed",)
    elif status_code == 422:
        suggestions = ("Check the revision is a valid commit SHA or ref",)
    return FatalFetchError(
        f"HTTP {status_code} for {url}",
        status_code=status_code,
        suggestions=list(suggestions),
    )
