"""
Workspace Snapshot
==================
Restorable checkpoints of a git working tree, used exclusively by the
RemediationEngine to undo a fix.

Checkpoint:
    dirty tree → `git stash create` captures index + working tree as a
                 dangling commit, `git stash store -m <label>` keeps it
                 reachable (visible in `git stash list`); untracked files
                 are written to the object store with `git hash-object -w`
                 since stashes do not include them; the tree is not touched
    clean tree → HEAD is the restore point, nothing is stored

Restore:
    1. git reset --hard <HEAD at checkpoint time>
    2. git stash apply --index <stash>        (dirty checkpoints only)
    3. delete untracked files that did not exist at checkpoint time
    4. rewrite pre-existing untracked files whose content differs

Contract:
    - Every git failure is raised as WorkspaceError, never swallowed.
    - Untracked files count as changed when created, edited or deleted.
"""
import os
import subprocess
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from ci_engine.core.constants import CHECKPOINT_PREFIX
from ci_engine.core.errors import WorkspaceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    id: str
    label: str
    base: str
    stash: Optional[str] = None
    untracked: Tuple[str, ...] = ()
    # (path, blob sha) of each untracked file at checkpoint time
    untracked_blobs: Tuple[Tuple[str, str], ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ref(self) -> str:
        """The commit the tree is compared against: stash if taken, else base."""
        return self.stash or self.base


def checkpoint_label(check_name: str, when: Optional[datetime] = None) -> str:
    """Named, timestamped label for a pre-fix checkpoint."""
    when = when or datetime.now(timezone.utc)
    safe_name = "".join(c if c.isalnum() or c in "-_." else "-" for c in check_name).strip("-")
    return f"{CHECKPOINT_PREFIX}-{safe_name or 'fix'}-{when.strftime('%Y%m%dT%H%M%S%fZ')}"


class WorkspaceSnapshot(Protocol):
    def is_dirty(self) -> bool: ...
    def checkpoint(self, label: str) -> Checkpoint: ...
    def restore(self, checkpoint: Checkpoint) -> None: ...
    def diff(self, since: Checkpoint) -> str: ...
    def changed_files(self, since: Checkpoint) -> List[str]: ...


class GitWorkspace:
    """
    WorkspaceSnapshot over a local git checkout.
    """

    def __init__(self, workspace_path: str) -> None:
        self.workspace_path = os.path.abspath(workspace_path)

    def _git(self, *args: str, binary: bool = False):
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.workspace_path,
                check=True,
                capture_output=True,
                text=not binary,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            raise WorkspaceError(
                f"git {' '.join(args)} failed: {stderr.strip()}",
                details={"returncode": e.returncode, "cwd": self.workspace_path},
            ) from e
        except FileNotFoundError as e:
            raise WorkspaceError("git executable not found", suggestions=["Install git"]) from e
        return res.stdout

    def _untracked(self) -> Tuple[str, ...]:
        out = self._git("ls-files", "--others", "--exclude-standard")
        return tuple(sorted(line for line in out.splitlines() if line.strip()))

    def _abs(self, path: str) -> str:
        return os.path.join(self.workspace_path, path)

    def _hash(self, paths: Iterable[str], write: bool = False) -> Dict[str, str]:
        """Blob sha per regular file; missing paths and symlinks are left out."""
        present = [p for p in paths if os.path.isfile(self._abs(p)) and not os.path.islink(self._abs(p))]
        if not present:
            return {}
        flags = ("-w", "--no-filters") if write else ("--no-filters",)
        shas = self._git("hash-object", *flags, "--", *present).split()
        return dict(zip(present, shas))

    def _modified_untracked(self, since: Checkpoint) -> List[str]:
        saved = dict(since.untracked_blobs)
        current = self._hash(saved)
        return [path for path, sha in saved.items() if current.get(path) != sha]

    # ------------------------------------------------------------------
    # WorkspaceSnapshot
    # ------------------------------------------------------------------
    def is_dirty(self) -> bool:
        """True if the tree has staged, unstaged or untracked changes."""
        return bool(self._git("status", "--porcelain").strip())

    def head(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def checkpoint(self, label: str) -> Checkpoint:
        """Record a restore point without modifying the working tree."""
        base = self.head()
        untracked = self._untracked()
        blobs = self._hash(untracked, write=True)
        stash = self._git("stash", "create", label).strip() or None
        if stash:
            self._git("stash", "store", "-m", label, stash)
            logger.info("Checkpoint %s stored as %s (%d untracked)", label, stash[:10], len(blobs))
        else:
            logger.info("Checkpoint %s: restore point is HEAD %s (%d untracked)", label, base[:10], len(blobs))
        return Checkpoint(
            id=stash or base,
            label=label,
            base=base,
            stash=stash,
            untracked=untracked,
            untracked_blobs=tuple(sorted(blobs.items())),
        )

    def restore(self, checkpoint: Checkpoint) -> None:
        """Put the tree back exactly as it was at `checkpoint`."""
        logger.warning("Restoring checkpoint %s", checkpoint.label)
        self._git("reset", "--hard", "-q", checkpoint.base)
        if checkpoint.stash:
            self._git("stash", "apply", "--index", "-q", checkpoint.stash)

        keep = set(checkpoint.untracked)
        for path in self._untracked():
            if path in keep:
                continue
            logger.debug("Removing file created after checkpoint: %s", path)
            os.remove(self._abs(path))

        blobs = dict(checkpoint.untracked_blobs)
        for path in self._modified_untracked(checkpoint):
            logger.debug("Rewriting untracked file from checkpoint: %s", path)
            abs_path = self._abs(path)
            os.makedirs(os.path.dirname(abs_path), exist_ok=True)
            with open(abs_path, "wb") as f:
                f.write(self._git("cat-file", "blob", blobs[path], binary=True))

    def diff(self, since: Checkpoint) -> str:
        """`git diff --stat` of the working tree against the checkpoint."""
        return self._git("diff", "--stat", since.ref).strip()

    def changed_files(self, since: Checkpoint) -> List[str]:
        """Exact list of files changed, created or deleted since the checkpoint."""
        changed = {line for line in self._git("diff", "--name-only", since.ref).splitlines() if line.strip()}
        created = set(self._untracked()) - set(since.untracked)
        return sorted(changed | created | set(self._modified_untracked(since)))
