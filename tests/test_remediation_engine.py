"""
Unit Tests — Remediation Engine
===============================
The safety envelope around one fix attempt, with a fake workspace and a
scripted process runner. No git repository and no fix tools are needed.
"""
import asyncio

import pytest

from ci_engine.agents.remediation_engine import FixOptions, RemediationEngine
from ci_engine.core.constants import (
    DECLINED,
    DRY_RUN,
    EXECUTION_FAILED,
    FIXED,
    NO_APPLICABLE_ACTION,
    NO_CHANGES,
    REGRESSION,
    TOOL_UNAVAILABLE,
    ErrorKind,
)
from ci_engine.core.errors import ProcessTimeoutError, WorkspaceError
from ci_engine.executor.fix_resolver import FixResolver
from ci_engine.executor.process_runner import ProcessResult
from ci_engine.models.check_snapshot import FailureDetail
from ci_engine.services.workspace import Checkpoint


class FakeWorkspace:
    def __init__(self, dirty=False, changed=("src/app.py",), fail_checkpoint=False):
        self.dirty = dirty
        self.changed = list(changed)
        self.fail_checkpoint = fail_checkpoint
        self.calls = []
        self.restored = []

    def is_dirty(self):
        self.calls.append("is_dirty")
        return self.dirty

    def checkpoint(self, label):
        self.calls.append("checkpoint")
        if self.fail_checkpoint:
            raise WorkspaceError("git stash create failed: index.lock exists")
        stash = "5a5a5a5a" if self.dirty else None
        return Checkpoint(id=stash or "head1234", label=label, base="head1234", stash=stash)

    def restore(self, checkpoint):
        self.calls.append("restore")
        self.restored.append(checkpoint)

    def diff(self, since):
        self.calls.append("diff")
        return f" {len(self.changed)} file(s) changed"

    def changed_files(self, since):
        self.calls.append("changed_files")
        return list(self.changed)


class ScriptedRunner:
    """Returns (or raises) one scripted item per run() call."""

    def __init__(self, *items):
        self.items = list(items)
        self.commands = []

    async def run(self, command, args=(), cwd=None, timeout=None):
        self.commands.append(" ".join([command, *args]))
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def ok(output=""):
    return ProcessResult(exit_code=0, stdout=output)


def errors(output):
    return ProcessResult(exit_code=1, stdout=output)


def fake_which(*installed):
    return lambda tool: f"/usr/bin/{tool}" if tool in installed else None


def lint_failure(files=("src/app.py",)):
    return FailureDetail(check_name="lint", error_kind=ErrorKind.LINT_ERROR, affected_files=files)


def make_engine(workspace, runner, installed=("ruff",), confirm=None, tmp_path="/tmp/ws"):
    resolver = FixResolver(str(tmp_path), which=fake_which(*installed))
    return RemediationEngine(workspace, runner, resolver, str(tmp_path), confirm=confirm)


# ---------------------------------------------------------------------------
# 1. Applied / rolled back
# ---------------------------------------------------------------------------
def test_fix_that_clears_errors_is_kept(tmp_path):
    async def run_test():
        workspace = FakeWorkspace()
        runner = ScriptedRunner(errors("Found 3 errors."), ok("3 files reformatted"), ok())
        engine = make_engine(workspace, runner, tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(), FixOptions())

        assert attempt.reason == FIXED
        assert attempt.applied is True
        assert attempt.rolled_back is False
        assert (attempt.errors_before, attempt.errors_after) == (3, 0)
        assert attempt.changed_files == ["src/app.py"]
        assert attempt.diff_summary
        assert runner.commands == [
            "/usr/bin/ruff format --check src/app.py",
            "/usr/bin/ruff format src/app.py",
            "/usr/bin/ruff format --check src/app.py",
        ]
        assert workspace.restored == []
        assert engine.metrics.fixed == 1
        assert engine.metrics.introduced == 0

    asyncio.run(run_test())


def test_fix_that_introduces_an_error_is_rolled_back(tmp_path):
    async def run_test():
        workspace = FakeWorkspace()
        runner = ScriptedRunner(ok(), ok(), errors("src/app.py:1:1: E999 SyntaxError: invalid syntax"))
        engine = make_engine(workspace, runner, tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(), FixOptions())

        assert attempt.reason == REGRESSION
        assert (attempt.errors_before, attempt.errors_after) == (0, 1)
        assert attempt.rolled_back is True
        assert attempt.applied is False
        assert len(workspace.restored) == 1
        assert "changed_files" not in workspace.calls
        assert engine.metrics.introduced == 1
        assert engine.metrics.rollbacks == 1
        assert engine.metrics.fixed == 0

    asyncio.run(run_test())


def test_line_counting_verifier(tmp_path):
    async def run_test():
        workspace = FakeWorkspace(changed=("main.go", "util.go"))
        runner = ScriptedRunner(ok("main.go\nutil.go\n"), ok(), ok(""))
        engine = make_engine(workspace, runner, installed=("gofmt",), tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(files=("main.go", "util.go")), FixOptions())

        assert (attempt.errors_before, attempt.errors_after) == (2, 0)
        assert attempt.applied is True

    asyncio.run(run_test())


def test_fix_that_changes_nothing(tmp_path):
    async def run_test():
        workspace = FakeWorkspace(changed=())
        engine = make_engine(workspace, ScriptedRunner(ok(), ok(), ok()), tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(), FixOptions())

        assert attempt.reason == NO_CHANGES
        assert attempt.applied is False
        assert attempt.rolled_back is False

    asyncio.run(run_test())


def test_dirty_tree_gets_named_checkpoint(tmp_path):
    async def run_test():
        workspace = FakeWorkspace(dirty=True)
        engine = make_engine(workspace, ScriptedRunner(errors("Found 1 error."), ok(), ok()), tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(), FixOptions())

        assert attempt.checkpoint_taken is True
        assert attempt.checkpoint_id == "5a5a5a5a"

    asyncio.run(run_test())


def test_clean_tree_has_no_stored_checkpoint(tmp_path):
    async def run_test():
        workspace = FakeWorkspace(dirty=False)
        engine = make_engine(workspace, ScriptedRunner(errors("Found 1 error."), ok(), ok()), tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(), FixOptions())

        assert attempt.checkpoint_taken is False
        assert attempt.checkpoint_id == ""

    asyncio.run(run_test())


@pytest.mark.parametrize("before,after", [(0, 0), (0, 2), (2, 0), (2, 2), (1, 5), (5, 1)])
def test_regression_always_implies_rollback(tmp_path, before, after):
    async def run_test():
        def verifier(count):
            return errors(f"Found {count} errors.") if count else ok()

        engine = make_engine(FakeWorkspace(), ScriptedRunner(verifier(before), ok(), verifier(after)), tmp_path=tmp_path)
        attempt = await engine.attempt_fix(lint_failure(), FixOptions())

        assert (attempt.errors_before, attempt.errors_after) == (before, after)
        if attempt.errors_after > attempt.errors_before:
            assert attempt.rolled_back
            assert not attempt.applied

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 2. Nothing executed
# ---------------------------------------------------------------------------
def test_dry_run_is_idempotent_and_touches_nothing(tmp_path):
    async def run_test():
        workspace = FakeWorkspace()
        runner = ScriptedRunner()
        engine = make_engine(workspace, runner, tmp_path=tmp_path)

        first = await engine.attempt_fix(lint_failure(), FixOptions(dry_run=True))
        second = await engine.attempt_fix(lint_failure(), FixOptions(dry_run=True))

        for attempt in (first, second):
            assert attempt.reason == DRY_RUN
            assert attempt.dry_run is True
            assert attempt.applied is False
            assert attempt.message == "Would run: /usr/bin/ruff format src/app.py"
        assert first.action == second.action
        assert workspace.calls == []
        assert runner.commands == []
        assert engine.metrics.dry_runs == 2
        assert engine.metrics.total_attempts == 0

    asyncio.run(run_test())


def test_missing_tool_reports_install_guidance(tmp_path):
    async def run_test():
        workspace = FakeWorkspace()
        engine = make_engine(workspace, ScriptedRunner(), installed=(), tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(), FixOptions())

        assert attempt.reason == TOOL_UNAVAILABLE
        assert "pip install ruff" in attempt.message
        assert attempt.applied is False
        assert workspace.calls == []

    asyncio.run(run_test())


def test_no_fix_chain_is_not_an_error(tmp_path):
    async def run_test():
        engine = make_engine(FakeWorkspace(), ScriptedRunner(), tmp_path=tmp_path)
        failure = FailureDetail(check_name="pytest", error_kind=ErrorKind.TEST_FAILURE, affected_files=("tests/test_x.py",))

        attempt = await engine.attempt_fix(failure, FixOptions())

        assert attempt.reason == NO_APPLICABLE_ACTION
        assert attempt.action is None
        assert engine.metrics.by_reason == {NO_APPLICABLE_ACTION: 1}

    asyncio.run(run_test())


def test_interactive_decline(tmp_path):
    async def run_test():
        asked = []

        def confirm(action, failure):
            asked.append(action.description)
            return False

        workspace = FakeWorkspace()
        engine = make_engine(workspace, ScriptedRunner(), confirm=confirm, tmp_path=tmp_path)

        attempt = await engine.attempt_fix(lint_failure(), FixOptions(interactive=True))

        assert attempt.reason == DECLINED
        assert asked == ["ruff format"]
        assert workspace.calls == []

    asyncio.run(run_test())


def test_interactive_without_callback_declines(tmp_path):
    async def run_test():
        engine = make_engine(FakeWorkspace(), ScriptedRunner(), tmp_path=tmp_path)
        attempt = await engine.attempt_fix(lint_failure(), FixOptions(interactive=True))
        assert attempt.reason == DECLINED

    asyncio.run(run_test())


def test_interactive_async_approval(tmp_path):
    async def run_test():
        async def confirm(action, failure):
            return True

        engine = make_engine(
            FakeWorkspace(), ScriptedRunner(errors("Found 1 error."), ok(), ok()), confirm=confirm, tmp_path=tmp_path
        )
        attempt = await engine.attempt_fix(lint_failure(), FixOptions(interactive=True))
        assert attempt.reason == FIXED

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 3. Errors inside the envelope
# ---------------------------------------------------------------------------
def test_fix_timeout_restores_and_propagates(tmp_path):
    async def run_test():
        workspace = FakeWorkspace()
        runner = ScriptedRunner(errors("Found 2 errors."), ProcessTimeoutError("'ruff format' timed out after 300s"))
        engine = make_engine(workspace, runner, tmp_path=tmp_path)

        with pytest.raises(ProcessTimeoutError):
            await engine.attempt_fix(lint_failure(), FixOptions())

        assert len(workspace.restored) == 1
        recorded = engine.metrics.attempts[-1]
        assert recorded.reason == EXECUTION_FAILED
        assert recorded.rolled_back is True
        assert engine.metrics.rollbacks == 1

    asyncio.run(run_test())


def test_cancellation_restores_and_propagates(tmp_path):
    async def run_test():
        workspace = FakeWorkspace(dirty=True)
        runner = ScriptedRunner(errors("Found 2 errors."), asyncio.CancelledError())
        engine = make_engine(workspace, runner, tmp_path=tmp_path)

        with pytest.raises(asyncio.CancelledError):
            await engine.attempt_fix(lint_failure(), FixOptions())

        assert workspace.restored[0].stash == "5a5a5a5a"
        assert engine.metrics.attempts[-1].reason == EXECUTION_FAILED

    asyncio.run(run_test())


def test_checkpoint_failure_runs_nothing(tmp_path):
    async def run_test():
        runner = ScriptedRunner()
        engine = make_engine(FakeWorkspace(fail_checkpoint=True), runner, tmp_path=tmp_path)

        with pytest.raises(WorkspaceError):
            await engine.attempt_fix(lint_failure(), FixOptions())

        assert runner.commands == []
        assert engine.metrics.attempts[-1].reason == EXECUTION_FAILED

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 4. Metrics
# ---------------------------------------------------------------------------
def test_metrics_accumulate_per_session(tmp_path):
    async def run_test():
        runner = ScriptedRunner(
            errors("Found 3 errors."), ok(), ok(),          # fixed
            ok(), ok(), errors("Found 1 error."),            # regression
        )
        engine = make_engine(FakeWorkspace(), runner, tmp_path=tmp_path)

        await engine.attempt_fix(lint_failure(), FixOptions())
        await engine.attempt_fix(lint_failure(), FixOptions())
        await engine.attempt_fix(lint_failure(), FixOptions(dry_run=True))

        metrics = engine.metrics
        assert metrics.total_attempts == 2
        assert metrics.fixed == 1
        assert metrics.introduced == 1
        assert metrics.rollbacks == 1
        assert metrics.dry_runs == 1
        assert metrics.by_error_kind["lint-error"].attempts == 2
        assert metrics.by_reason == {FIXED: 1, REGRESSION: 1, DRY_RUN: 1}

        fresh = engine.start_session()
        assert fresh.total_attempts == 0
        assert engine.metrics is fresh

    asyncio.run(run_test())
