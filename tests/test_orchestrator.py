"""
Orchestrator Tests
==================
Tests the Poll → Remediate → Re-poll loop with the poller, the remediation
engine and the publisher mocked, plus one end-to-end run over the real
CIMonitor and RemediationEngine.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ci_engine.agents.ci_monitor import CIMonitor, PollOptions
from ci_engine.agents.orchestrator import Orchestrator
from ci_engine.agents.remediation_engine import FixOptions, RemediationEngine
from ci_engine.core.constants import (
    CHECKS_FAILED,
    CRITICAL_FAILURE,
    FIXED,
    PUBLISH_FAILED,
    REGRESSION,
    REMEDIATION_EXHAUSTED,
    ErrorKind,
)
from ci_engine.core.errors import (
    EngineTimeoutError,
    FatalFetchError,
    ProcessExecutionError,
    WorkspaceBusyError,
    WorkspaceError,
)
from ci_engine.executor.fix_resolver import FixResolver
from ci_engine.executor.process_runner import ProcessResult
from ci_engine.models.check_snapshot import CheckSnapshot, FailureDetail
from ci_engine.models.fix_attempt import FixAttempt, RemediationMetrics
from ci_engine.models.result import FailedResult, PollOutcome, SucceededResult, TimedOutResult, parse_result
from ci_engine.services.workspace import Checkpoint
from ci_engine.services.workspace_lock import WorkspaceLockRegistry

WORKSPACE = "/fake/workspace"

LINT = FailureDetail(check_name="lint", error_kind=ErrorKind.LINT_ERROR, affected_files=("src/app.py",))
TESTS = FailureDetail(check_name="pytest", error_kind=ErrorKind.TEST_FAILURE)


def snapshot(*failures, passed=2):
    return CheckSnapshot(
        total=passed + len(failures),
        passed=passed,
        failed=len(failures),
        failure_details=tuple(failures),
        passed_names=tuple(f"ok-{i}" for i in range(passed)),
    )


def succeeded(revision="abc123", polls=1, retries=0):
    return PollOutcome(kind="succeeded", revision=revision, snapshot=snapshot(), polls=polls, retries_used=retries)


def failed(*failures, revision="abc123", reason=CHECKS_FAILED, polls=1):
    return PollOutcome(kind="failed", revision=revision, snapshot=snapshot(*failures), reason=reason, polls=polls)


def timed_out(revision="abc123"):
    pending = CheckSnapshot(total=2, passed=1, pending=1)
    return PollOutcome(kind="timed_out", revision=revision, snapshot=pending, reason="timeout", polls=4)


def applied_attempt(failure, applied=True):
    return FixAttempt(
        check_name=failure.check_name,
        error_kind=failure.error_kind,
        applied=applied,
        rolled_back=not applied,
        errors_before=2,
        errors_after=0 if applied else 3,
        changed_files=["src/app.py"] if applied else [],
        reason=FIXED if applied else REGRESSION,
    )


@pytest.fixture
def monitor():
    mon = MagicMock(spec=CIMonitor)
    mon.wait_for_checks = AsyncMock()
    return mon


@pytest.fixture
def engine():
    eng = MagicMock(spec=RemediationEngine)
    eng.workspace_path = WORKSPACE
    eng.can_resolve.side_effect = lambda failure, allow_unsafe=False: failure.error_kind == ErrorKind.LINT_ERROR

    def start_session():
        eng.metrics = RemediationMetrics()
        return eng.metrics

    async def attempt_fix(failure, options):
        attempt = applied_attempt(failure)
        eng.metrics.record(attempt)
        return attempt

    eng.start_session.side_effect = start_session
    eng.attempt_fix = AsyncMock(side_effect=attempt_fix)
    return eng


def make_orchestrator(monitor, engine=None, **kwargs):
    kwargs.setdefault("fix_options", FixOptions(max_attempts=2))
    kwargs.setdefault("poll_options", PollOptions(timeout=60.0))
    kwargs.setdefault("locks", WorkspaceLockRegistry())
    kwargs.setdefault("workspace_path", WORKSPACE)
    return Orchestrator(monitor, engine, **kwargs)


# ---------------------------------------------------------------------------
# 1. Terminal results straight from the poller
# ---------------------------------------------------------------------------
def test_success_on_first_poll(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.return_value = succeeded(polls=3, retries=1)
        result = await make_orchestrator(monitor, engine).run("abc123")

        assert isinstance(result, SucceededResult)
        assert result.polls == 3
        assert result.retries_used == 1
        assert result.state_history == ["polling", "succeeded"]
        engine.attempt_fix.assert_not_called()

    asyncio.run(run_test())


def test_timeout_result_carries_last_snapshot(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.return_value = timed_out()
        result = await make_orchestrator(monitor, engine).run("abc123")

        assert isinstance(result, TimedOutResult)
        assert result.last_snapshot.pending == 1
        assert result.state_history == ["polling", "timed_out"]

    asyncio.run(run_test())


def test_failure_without_remediation(monitor):
    async def run_test():
        monitor.wait_for_checks.return_value = failed(LINT)
        result = await make_orchestrator(monitor, None).run("abc123")

        assert isinstance(result, FailedResult)
        assert result.reason == CHECKS_FAILED
        assert result.snapshot.failure_details == (LINT,)
        assert result.state_history == ["polling", "failed"]

    asyncio.run(run_test())


def test_remediation_disabled_by_flag(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.return_value = failed(LINT)
        result = await make_orchestrator(monitor, engine, enable_remediation=False).run("abc123")

        assert result.reason == CHECKS_FAILED
        engine.attempt_fix.assert_not_called()

    asyncio.run(run_test())


def test_unfixable_failure_is_surfaced_unmodified(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.return_value = failed(LINT, TESTS, reason=CRITICAL_FAILURE)
        result = await make_orchestrator(monitor, engine).run("abc123")

        assert result.reason == CRITICAL_FAILURE
        assert result.snapshot.failure_details == (LINT, TESTS)
        engine.attempt_fix.assert_not_called()

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 2. Remediation loop
# ---------------------------------------------------------------------------
def test_fix_then_repoll_succeeds(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.side_effect = [failed(LINT), succeeded()]
        result = await make_orchestrator(monitor, engine).run("abc123")

        assert isinstance(result, SucceededResult)
        assert result.state_history == ["polling", "remediating", "polling", "succeeded"]
        assert result.polls == 2
        assert engine.attempt_fix.await_count == 1

    asyncio.run(run_test())


def test_attempts_are_capped_per_failure(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.return_value = failed(LINT)
        result = await make_orchestrator(monitor, engine).run("abc123")

        assert result.reason == REMEDIATION_EXHAUSTED
        assert engine.attempt_fix.await_count == 2
        assert monitor.wait_for_checks.await_count == 3
        assert result.remediation.fixed == 2
        assert result.state_history[-1] == "failed"

    asyncio.run(run_test())


def test_rolled_back_fix_ends_remediation(monitor, engine):
    async def run_test():
        async def attempt_fix(failure, options):
            attempt = applied_attempt(failure, applied=False)
            engine.metrics.record(attempt)
            return attempt

        engine.attempt_fix.side_effect = attempt_fix
        monitor.wait_for_checks.return_value = failed(LINT)
        result = await make_orchestrator(monitor, engine).run("abc123")

        assert result.reason == REMEDIATION_EXHAUSTED
        assert result.remediation.rollbacks == 1
        assert result.remediation.introduced == 1
        assert monitor.wait_for_checks.await_count == 1

    asyncio.run(run_test())


def test_fix_process_error_is_a_failed_fix(monitor, engine):
    async def run_test():
        engine.attempt_fix.side_effect = ProcessExecutionError("Could not start 'ruff'")
        monitor.wait_for_checks.return_value = failed(LINT)
        result = await make_orchestrator(monitor, engine).run("abc123")

        assert result.reason == REMEDIATION_EXHAUSTED

    asyncio.run(run_test())


def test_fatal_fetch_error_propagates(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.side_effect = FatalFetchError("HTTP 401", status_code=401)
        with pytest.raises(FatalFetchError):
            await make_orchestrator(monitor, engine).run("abc123")

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 3. Publishing
# ---------------------------------------------------------------------------
def test_published_revision_is_polled_next(monitor, engine):
    async def run_test():
        publisher = MagicMock()
        publisher.publish.return_value = "def456"
        monitor.wait_for_checks.side_effect = [failed(LINT), succeeded(revision="def456")]

        result = await make_orchestrator(monitor, engine, publisher=publisher).run("abc123")

        assert result.revision == "def456"
        assert [c.args[0] for c in monitor.wait_for_checks.await_args_list] == ["abc123", "def456"]
        published = publisher.publish.call_args.args[0]
        assert [a.check_name for a in published] == ["lint"]

    asyncio.run(run_test())


def test_publish_failure(monitor, engine):
    async def run_test():
        publisher = MagicMock()
        publisher.publish.side_effect = WorkspaceError("Refusing to push automated fixes to 'main'")
        monitor.wait_for_checks.return_value = failed(LINT)

        result = await make_orchestrator(monitor, engine, publisher=publisher).run("abc123")

        assert result.reason == PUBLISH_FAILED
        assert result.remediation.fixed == 1

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 4. Deadline / exclusivity / sessions
# ---------------------------------------------------------------------------
def test_deadline_raises_with_last_snapshot(monitor, engine):
    async def run_test():
        calls = []

        async def wait_for_checks(revision, options, on_progress):
            calls.append(revision)
            if len(calls) > 1:
                await asyncio.sleep(60)
            return failed(LINT)

        monitor.wait_for_checks.side_effect = wait_for_checks
        with pytest.raises(EngineTimeoutError) as exc_info:
            await make_orchestrator(monitor, engine).run("abc123", deadline=0.2)

        assert exc_info.value.last_snapshot.failure_details == (LINT,)

    asyncio.run(run_test())


def test_deadline_not_hit(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.return_value = succeeded()
        result = await make_orchestrator(monitor, engine).run("abc123", deadline=5.0)
        assert result.kind == "succeeded"

    asyncio.run(run_test())


def test_one_run_per_working_tree(monitor, engine):
    async def run_test():
        locks = WorkspaceLockRegistry()
        monitor.wait_for_checks.return_value = succeeded()
        orchestrator = make_orchestrator(monitor, engine, locks=locks)

        async with locks.hold(WORKSPACE):
            with pytest.raises(WorkspaceBusyError):
                await orchestrator.run("abc123")

        result = await orchestrator.run("abc123")
        assert result.kind == "succeeded"
        assert not locks.is_locked(WORKSPACE)

    asyncio.run(run_test())


def test_fresh_metrics_per_run(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.side_effect = [failed(LINT), succeeded(), failed(LINT), failed(LINT), failed(LINT)]
        orchestrator = make_orchestrator(monitor, engine)

        first = await orchestrator.run("abc123")
        second = await orchestrator.run("abc123")

        assert first.kind == "succeeded"
        assert second.reason == REMEDIATION_EXHAUSTED
        assert second.remediation.total_attempts == 2
        assert second.state_history[0] == "polling"

    asyncio.run(run_test())


def test_result_round_trips_as_one_json_record(monitor, engine):
    async def run_test():
        monitor.wait_for_checks.return_value = failed(LINT)
        result = await make_orchestrator(monitor, engine).run("abc123")
        assert parse_result(result.to_json()) == result

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 5. End to end over the real poller and remediation engine
# ---------------------------------------------------------------------------
class ScriptedSource:
    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)

    async def fetch(self, revision):
        return self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]


class QueueRunner:
    def __init__(self, *results):
        self.results = list(results)

    async def run(self, command, args=(), cwd=None, timeout=None):
        return self.results.pop(0)


class CleanWorkspace:
    def __init__(self):
        self.restored = 0

    def is_dirty(self):
        return False

    def checkpoint(self, label):
        return Checkpoint(id="head", label=label, base="head")

    def restore(self, checkpoint):
        self.restored += 1

    def diff(self, since):
        return " src/app.py | 4 ++--"

    def changed_files(self, since):
        return ["src/app.py"]


def test_lint_failure_is_fixed_end_to_end(tmp_path):
    async def run_test():
        now = [0.0]

        async def fake_sleep(delay):
            now[0] += delay

        source = ScriptedSource(
            CheckSnapshot(total=2, pending=2),
            snapshot(LINT, passed=1),
            snapshot(passed=2),
        )
        runner = QueueRunner(
            ProcessResult(exit_code=1, stdout="Would reformat: src/app.py\n1 file would be reformatted"),
            ProcessResult(exit_code=0, stdout="1 file reformatted"),
            ProcessResult(exit_code=0, stdout="1 file already formatted"),
        )
        workspace = CleanWorkspace()
        resolver = FixResolver(str(tmp_path), which=lambda tool: f"/usr/bin/{tool}")
        remediation = RemediationEngine(workspace, runner, resolver, str(tmp_path))
        monitor = CIMonitor(source, clock=lambda: now[0], sleep=fake_sleep)
        events = []

        orchestrator = Orchestrator(
            monitor,
            remediation,
            poll_options=PollOptions(timeout=120.0, strategy="fixed", initial_interval=5.0),
            fix_options=FixOptions(max_attempts=2),
            on_progress=events.append,
            locks=WorkspaceLockRegistry(),
        )
        result = await orchestrator.run("abc123")

        assert result.kind == "succeeded"
        assert result.state_history == ["polling", "remediating", "polling", "succeeded"]
        assert remediation.metrics.fixed == 1
        assert remediation.metrics.attempts[0].errors_before == 1
        assert remediation.metrics.attempts[0].errors_after == 0
        assert workspace.restored == 0
        assert len(events) == 3

    asyncio.run(run_test())


def test_unsafe_only_fix_is_not_attempted(tmp_path):
    async def run_test():
        audit = FailureDetail(
            check_name="pip-audit",
            error_kind=ErrorKind.SECURITY_FINDING,
            affected_files=("requirements.txt",),
        )
        source = ScriptedSource(snapshot(audit, passed=1))
        resolver = FixResolver(str(tmp_path), which=lambda tool: f"/usr/bin/{tool}")
        remediation = RemediationEngine(CleanWorkspace(), QueueRunner(), resolver, str(tmp_path))
        monitor = CIMonitor(source, clock=lambda: 0.0, sleep=AsyncMock())

        orchestrator = Orchestrator(
            monitor,
            remediation,
            poll_options=PollOptions(timeout=60.0),
            fix_options=FixOptions(allow_unsafe=False),
            locks=WorkspaceLockRegistry(),
        )
        result = await orchestrator.run("abc123")

        assert result.reason == CRITICAL_FAILURE
        assert result.state_history == ["polling", "failed"]
        assert remediation.metrics.total_attempts == 0

    asyncio.run(run_test())
