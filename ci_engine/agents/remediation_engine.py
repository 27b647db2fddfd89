"""
Remediation Engine
==================
Attempts one automatic fix for one FailureDetail inside a safety envelope.

Resolution:
    FixResolver maps (ecosystem, error kind) to a chain of FixActions and
    picks the first runnable one. No chain → NO_APPLICABLE_ACTION; tools
    missing → TOOL_UNAVAILABLE with install guidance. Neither is an error.

Safety envelope (mandatory order):
    1. dry_run            → log "Would run: ...", record, mutate nothing
    2. checkpoint         → dirty tree: named, timestamped stash checkpoint
                            clean tree: HEAD is the restore point
    3. errors_before      → run the verifier, count diagnostics
    4. run the fix        → subprocess, output captured
    5. errors_after       → run the verifier again
    6. regression         → errors_after > errors_before: restore, rolled_back
    7. keep               → applied with the exact changed files + diff stat;
                            no change and no improvement → NO_CHANGES
    8. exception / cancel → restore, record, propagate

Guarantee: errors_after > errors_before always implies rolled_back.

Every attempt, successful or not, is appended to the engine's own
RemediationMetrics. Nothing is process-global.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from ci_engine.core import config
from ci_engine.core.constants import (
    DECLINED,
    DRY_RUN,
    EXECUTION_FAILED,
    FIXED,
    NO_APPLICABLE_ACTION,
    NO_CHANGES,
    REGRESSION,
    TOOL_UNAVAILABLE,
)
from ci_engine.core.errors import RemediationRegressionError, ToolUnavailableError, WorkspaceError
from ci_engine.executor.fix_resolver import FixResolver
from ci_engine.executor.process_runner import ProcessRunner
from ci_engine.models.check_snapshot import FailureDetail
from ci_engine.models.fix_attempt import FixAction, FixAttempt, RemediationMetrics
from ci_engine.parser.failure_parser import count_diagnostics
from ci_engine.services.workspace import Checkpoint, WorkspaceSnapshot, checkpoint_label

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[FixAction, FailureDetail], Union[bool, Awaitable[bool]]]


@dataclass
class FixOptions:
    dry_run: bool = False
    interactive: bool = False
    allow_unsafe: bool = False
    max_attempts: int = 2
    process_timeout: float = 300.0

    @classmethod
    def from_config(cls, **overrides) -> "FixOptions":
        values = dict(
            allow_unsafe=config.FIX_ALLOW_UNSAFE,
            max_attempts=config.FIX_MAX_ATTEMPTS,
            process_timeout=config.FIX_PROCESS_TIMEOUT,
        )
        values.update(overrides)
        return cls(**values)


class RemediationEngine:
    """
    Resolves and applies fixes for failed checks without ever leaving the
    working tree worse off than it found it.
    """

    def __init__(
        self,
        workspace: WorkspaceSnapshot,
        runner: ProcessRunner,
        resolver: FixResolver,
        workspace_path: str,
        confirm: Optional[ConfirmCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.workspace = workspace
        self.runner = runner
        self.resolver = resolver
        self.workspace_path = workspace_path
        self.confirm = confirm
        self.clock = clock
        self.metrics = RemediationMetrics()

    def start_session(self) -> RemediationMetrics:
        """Replace the metrics with a fresh ledger (one per Orchestrator run)."""
        self.metrics = RemediationMetrics()
        return self.metrics

    def can_resolve(self, failure: FailureDetail, allow_unsafe: bool = False) -> bool:
        return self.resolver.can_resolve(failure, allow_unsafe=allow_unsafe)

    # ------------------------------------------------------------------
    # attempt_fix
    # ------------------------------------------------------------------
    async def attempt_fix(self, failure: FailureDetail, options: Optional[FixOptions] = None) -> FixAttempt:
        """
        Attempt one fix for `failure`.

        Parameters
        ----------
        failure : FailureDetail
            The failed check to remediate.
        options : FixOptions | None
            Defaults to FixOptions.from_config().

        Returns
        -------
        FixAttempt
            Always recorded in self.metrics.

        Raises
        ------
        ProcessExecutionError, WorkspaceError, asyncio.CancelledError
            After the checkpoint has been restored and the attempt recorded.
        """
        options = options or FixOptions.from_config()
        start = self.clock()
        attempt = FixAttempt(check_name=failure.check_name, error_kind=failure.error_kind)

        try:
            action = self.resolver.resolve(failure, allow_unsafe=options.allow_unsafe)
        except ToolUnavailableError as e:
            attempt.reason = TOOL_UNAVAILABLE
            attempt.message = f"{e.message}. Install with: {'; '.join(e.suggestions)}"
            logger.warning("Cannot fix %s: %s", failure.check_name, attempt.message)
            return self._finish(attempt, start)

        if action is None:
            attempt.reason = NO_APPLICABLE_ACTION
            attempt.message = f"No automatic fix for {failure.error_kind.value} in {failure.check_name}"
            return self._finish(attempt, start)

        attempt.action = action
        attempt.safe = action.safe

        if options.dry_run:
            attempt.dry_run = True
            attempt.reason = DRY_RUN
            attempt.message = f"Would run: {action.command_line}"
            logger.info("[dry-run] %s: %s", failure.check_name, attempt.message)
            return self._finish(attempt, start)

        if options.interactive and not await self._confirmed(action, failure):
            attempt.reason = DECLINED
            attempt.message = f"Declined: {action.command_line}"
            logger.info("Fix for %s declined", failure.check_name)
            return self._finish(attempt, start)

        return await self._apply(attempt, action, failure, options, start)

    # ------------------------------------------------------------------
    # Safety envelope
    # ------------------------------------------------------------------
    async def _apply(
        self,
        attempt: FixAttempt,
        action: FixAction,
        failure: FailureDetail,
        options: FixOptions,
        start: float,
    ) -> FixAttempt:
        try:
            dirty = self.workspace.is_dirty()
            checkpoint = self.workspace.checkpoint(checkpoint_label(failure.check_name))
        except WorkspaceError as e:
            attempt.reason = EXECUTION_FAILED
            attempt.message = f"Could not checkpoint the working tree: {e.message}"
            self._finish(attempt, start)
            raise
        if dirty:
            attempt.checkpoint_taken = True
            attempt.checkpoint_id = checkpoint.id

        try:
            attempt.errors_before = await self._count_errors(action, options)
            logger.info("Running fix for %s: %s", failure.check_name, action.command_line)
            fix_result = await self.runner.run(
                action.tool, action.args, cwd=self.workspace_path, timeout=options.process_timeout
            )
            logger.debug("Fix exited %d: %s", fix_result.exit_code, fix_result.output[-500:])
            attempt.errors_after = await self._count_errors(action, options)

            if attempt.errors_after > attempt.errors_before:
                regression = RemediationRegressionError(attempt.errors_before, attempt.errors_after)
                logger.warning("%s: %s, rolling back", failure.check_name, regression.message)
                self._restore(checkpoint, attempt)
                attempt.reason = REGRESSION
                attempt.message = regression.message
                return self._finish(attempt, start)

            attempt.changed_files = self.workspace.changed_files(checkpoint)
            attempt.diff_summary = self.workspace.diff(checkpoint)
        except (Exception, asyncio.CancelledError) as e:
            logger.error("Fix for %s aborted: %s", failure.check_name, e, exc_info=True)
            if not attempt.rolled_back:
                self._restore(checkpoint, attempt)
            attempt.reason = EXECUTION_FAILED
            attempt.message = str(e) or type(e).__name__
            self._finish(attempt, start)
            raise

        if not attempt.changed_files and attempt.errors_after >= attempt.errors_before:
            attempt.reason = NO_CHANGES
            attempt.message = "Fix ran but changed nothing"
            return self._finish(attempt, start)

        attempt.applied = True
        attempt.reason = FIXED
        attempt.message = (
            f"{action.description}: {attempt.errors_before} -> {attempt.errors_after} errors, "
            f"{len(attempt.changed_files)} file(s) changed"
        )
        logger.info("Applied fix for %s (%s)", failure.check_name, attempt.message)
        return self._finish(attempt, start)

    async def _count_errors(self, action: FixAction, options: FixOptions) -> int:
        if not action.verify_tool:
            return 0
        result = await self.runner.run(
            action.verify_tool, action.verify_args, cwd=self.workspace_path, timeout=options.process_timeout
        )
        count = count_diagnostics(result.output, result.exit_code, count_lines=action.verify_counts_lines)
        logger.debug("%s → %d error(s)", action.verify_command_line, count)
        return count

    def _restore(self, checkpoint: Checkpoint, attempt: FixAttempt) -> None:
        self.workspace.restore(checkpoint)
        attempt.rolled_back = True
        attempt.applied = False

    async def _confirmed(self, action: FixAction, failure: FailureDetail) -> bool:
        if self.confirm is None:
            logger.warning("Interactive mode without a confirm callback, skipping %s", failure.check_name)
            return False
        answer = self.confirm(action, failure)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    def _finish(self, attempt: FixAttempt, start: float) -> FixAttempt:
        attempt.duration_seconds = round(self.clock() - start, 3)
        self.metrics.record(attempt)
        return attempt
