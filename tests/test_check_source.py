"""
Check Source Tests
==================
GitHubCheckSource against an httpx.MockTransport: normalization of check
runs and commit statuses, and HTTP error mapping.
"""
import asyncio

import httpx
import pytest

from ci_engine.agents.check_source import (
    GitHubCheckSource,
    build_snapshot,
    extract_repo_path,
    normalize_check_run,
)
from ci_engine.core.constants import ErrorKind
from ci_engine.core.errors import FatalFetchError, TransientFetchError

SHA = "0123456789abcdef0123456789abcdef01234567"

RUFF_OUTPUT = """\
src/app/main.py:3:1: F401 [*] `os` imported but unused
src/app/util.py:10:5: E711 Comparison to `None` should be `cond is None`
Found 2 errors.
"""

MYPY_OUTPUT = """\
src/app/models.py:42: error: Incompatible types in assignment  [assignment]
Found 1 error in 1 file (checked 12 source files)
"""


def run(name, status="completed", conclusion=None, **output):
    return {
        "name": name,
        "status": status,
        "conclusion": conclusion,
        "html_url": f"https://github.com/acme/widgets/runs/{name}",
        "output": output,
    }


def make_source(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GitHubCheckSource("https://github.com/acme/widgets.git", token="t0k", client=client)


def api_handler(check_runs, statuses=(), seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path.endswith("/check-runs"):
            return httpx.Response(200, json={"total_count": len(check_runs), "check_runs": list(check_runs)})
        if request.url.path.endswith("/status"):
            return httpx.Response(200, json={"state": "pending", "statuses": list(statuses)})
        return httpx.Response(404, json={"message": "Not Found"})

    return handler


class TestNormalization:

    @pytest.mark.parametrize("status,conclusion,expected", [
        ("queued", None, "pending"),
        ("in_progress", None, "pending"),
        ("completed", "success", "passed"),
        ("completed", "skipped", "skipped"),
        ("completed", "neutral", "skipped"),
        ("completed", "failure", "failed"),
        ("completed", "timed_out", "failed"),
        ("completed", "cancelled", "failed"),
    ])
    def test_check_run_states(self, status, conclusion, expected):
        assert normalize_check_run({"status": status, "conclusion": conclusion}) == expected

    def test_snapshot_counts_both_apis(self):
        snapshot = build_snapshot(
            [
                run("pytest", conclusion="success"),
                run("lint", conclusion="failure", title="Ruff", text=RUFF_OUTPUT),
                run("build", status="in_progress"),
                run("docs", conclusion="skipped"),
            ],
            [
                {"context": "ci/circleci", "state": "success"},
                {"context": "codecov/patch", "state": "failure", "description": "Coverage dropped"},
                {"context": "deploy", "state": "pending"},
            ],
        )
        assert (snapshot.total, snapshot.passed, snapshot.failed, snapshot.pending, snapshot.skipped) == (7, 2, 2, 2, 1)
        assert set(snapshot.passed_names) == {"pytest", "ci/circleci"}
        assert snapshot.failed_names == {"lint", "codecov/patch"}

    def test_first_occurrence_of_a_name_wins(self):
        snapshot = build_snapshot(
            [run("tests", conclusion="success"), run("tests", conclusion="failure")],
            [{"context": "tests", "state": "failure"}],
        )
        assert snapshot.total == 1
        assert snapshot.passed == 1

    def test_lint_failure_detail(self):
        snapshot = build_snapshot([run("lint", conclusion="failure", title="Ruff", text=RUFF_OUTPUT)], [])
        detail = snapshot.failure_details[0]
        assert detail.error_kind == ErrorKind.LINT_ERROR
        assert detail.affected_files == ("src/app/main.py", "src/app/util.py")
        assert detail.summary == "Ruff"
        assert "ruff check --fix" in detail.suggested_fix
        assert detail.url.endswith("/runs/lint")

    def test_output_decides_when_name_is_silent(self):
        snapshot = build_snapshot([run("quality", conclusion="failure", text=MYPY_OUTPUT)], [])
        detail = snapshot.failure_details[0]
        assert detail.error_kind == ErrorKind.TYPE_ERROR
        assert detail.affected_files == ("src/app/models.py",)

    def test_timed_out_conclusion_is_timeout_kind(self):
        snapshot = build_snapshot([run("e2e", conclusion="timed_out")], [])
        assert snapshot.failure_details[0].error_kind == ErrorKind.TIMEOUT


class TestRepoPath:

    @pytest.mark.parametrize("url", [
        "https://github.com/acme/widgets",
        "https://github.com/acme/widgets.git",
        "https://github.com/acme/widgets/",
        "git@github.com:acme/widgets.git",
    ])
    def test_forms(self, url):
        assert extract_repo_path(url) == "acme/widgets"

    def test_bad_url_is_fatal(self):
        with pytest.raises(FatalFetchError):
            GitHubCheckSource("https://gitlab.com/acme/widgets")


class TestFetch:

    def test_fetch_queries_both_endpoints(self):
        async def run_test():
            seen = []
            source = make_source(api_handler([run("pytest", conclusion="success")], seen=seen))
            async with source:
                snapshot = await source.fetch(SHA)

            assert snapshot.passed == 1
            paths = [r.url.path for r in seen]
            assert paths == [
                f"/repos/acme/widgets/commits/{SHA}/check-runs",
                f"/repos/acme/widgets/commits/{SHA}/status",
            ]
            assert seen[0].headers["Authorization"] == "token t0k"
            assert seen[0].url.params["filter"] == "latest"

        asyncio.run(run_test())

    @pytest.mark.parametrize("status_code,headers,body,expected", [
        (404, {}, {"message": "Not Found"}, FatalFetchError),
        (401, {}, {"message": "Bad credentials"}, FatalFetchError),
        (422, {}, {"message": "No commit found for SHA"}, FatalFetchError),
        (403, {}, {"message": "Resource not accessible by integration"}, FatalFetchError),
        (403, {"x-ratelimit-remaining": "0"}, {"message": "API rate limit exceeded"}, TransientFetchError),
        (429, {"retry-after": "30"}, {"message": "Too Many Requests"}, TransientFetchError),
        (500, {}, {"message": "Server Error"}, TransientFetchError),
        (503, {}, {"message": "Service Unavailable"}, TransientFetchError),
    ])
    def test_http_error_mapping(self, status_code, headers, body, expected):
        async def run_test():
            def handler(request):
                return httpx.Response(status_code, headers=headers, json=body)

            source = make_source(handler)
            with pytest.raises(expected) as exc_info:
                await source.fetch(SHA)
            assert exc_info.value.status_code == status_code

        asyncio.run(run_test())

    def test_fatal_error_carries_suggestion(self):
        async def run_test():
            source = make_source(lambda request: httpx.Response(404, json={"message": "Not Found"}))
            with pytest.raises(FatalFetchError) as exc_info:
                await source.fetch(SHA)
            assert any("repository URL" in s for s in exc_info.value.suggestions)

        asyncio.run(run_test())

    def test_network_error_is_transient(self):
        async def run_test():
            def handler(request):
                raise httpx.ConnectError("connection refused", request=request)

            source = make_source(handler)
            with pytest.raises(TransientFetchError):
                await source.fetch(SHA)

        asyncio.run(run_test())

    def test_malformed_json_is_transient(self):
        async def run_test():
            source = make_source(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
            with pytest.raises(TransientFetchError):
                await source.fetch(SHA)

        asyncio.run(run_test())

    def test_injected_client_is_not_closed(self):
        async def run_test():
            client = httpx.AsyncClient(transport=httpx.MockTransport(api_handler([])))
            source = GitHubCheckSource("https://github.com/acme/widgets", client=client)
            await source.aclose()
            assert not client.is_closed
            await client.aclose()

        asyncio.run(run_test())
