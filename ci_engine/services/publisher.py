"""
Revision Publisher
==================
Turns applied fixes into a new revision the CI can run on.

GitPublisher:
    1. git add <changed files of every applied attempt>
    2. git commit -m "<prefix> <descriptions>"   (skipped when nothing is staged)
    3. git push origin <current branch>           (one fetch + rebase retry)
    4. return `git rev-parse HEAD`

Refuses to push to main / master.
"""
import subprocess
import logging
from typing import List, Protocol, Sequence

from ci_engine.core.errors import WorkspaceError
from ci_engine.models.fix_attempt import FixAttempt

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES = frozenset({"main", "master"})


class RevisionPublisher(Protocol):
    def publish(self, attempts: Sequence[FixAttempt]) -> str: ...


class GitPublisher:
    """
    Commits and pushes applied fixes from the working tree.
    """

    def __init__(self, workspace_path: str, commit_prefix: str = "ci-fix:", remote: str = "origin") -> None:
        self.workspace_path = workspace_path
        self.commit_prefix = commit_prefix
        self.remote = remote

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.workspace_path,
                check=check,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise WorkspaceError(f"git {' '.join(args)} failed: {(e.stderr or '').strip()}") from e
        except FileNotFoundError as e:
            raise WorkspaceError("git executable not found", suggestions=["Install git"]) from e

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def commit_message(self, attempts: Sequence[FixAttempt]) -> str:
        descriptions: List[str] = []
        for attempt in attempts:
            label = attempt.action.description if attempt.action else attempt.error_kind.value
            entry = f"{label} ({attempt.check_name})"
            if entry not in descriptions:
                descriptions.append(entry)
        return f"{self.commit_prefix} {', '.join(descriptions)}"

    def publish(self, attempts: Sequence[FixAttempt]) -> str:
        """Commit + push the applied attempts; returns the new HEAD SHA."""
        applied = [a for a in attempts if a.applied]
        files = sorted({f for a in applied for f in a.changed_files})
        if not files:
            logger.info("Nothing to publish, re-polling current HEAD")
            return self._git("rev-parse", "HEAD").stdout.strip()

        branch = self.current_branch()
        if branch.lower() in PROTECTED_BRANCHES or branch == "HEAD":
            raise WorkspaceError(
                f"Refusing to push automated fixes to '{branch}'",
                suggestions=["Check out a feature branch before enabling FIX_PUBLISH"],
            )

        self._git("add", "--", *files)
        staged = self._git("diff", "--cached", "--quiet", check=False)
        if staged.returncode != 0:
            message = self.commit_message(applied)
            self._git("commit", "-m", message)
            logger.info("Committed fix: %s", message)
        else:
            logger.warning("Applied fixes produced no staged diff, skipping commit")

        try:
            self._git("push", self.remote, branch)
        except WorkspaceError as e:
            logger.warning("Push failed, fetching + rebasing before retry: %s", e)
            self._git("fetch", self.remote, branch)
            self._git("rebase", f"{self.remote}/{branch}")
            self._git("push", self.remote, branch)

        sha = self._git("rev-parse", "HEAD").stdout.strip()
        logger.info("Published %s to %s/%s", sha[:10], self.remote, branch)
        return sha
