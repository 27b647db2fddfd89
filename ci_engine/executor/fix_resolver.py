"""
Fix Resolver
============
Maps (ecosystem, ErrorKind) to an ordered fallback chain of FixActions and
selects the first one that can run here.

Rules:
    - Safe (formatter-only) actions come before unsafe (behaviour-changing) ones.
    - Unsafe actions are skipped unless allow_unsafe.
    - An action is runnable when both its tool and its verifier are found
      (workspace node_modules/.bin first, then PATH).
    - No chain, or only unsafe actions while allow_unsafe is off → None.
    - Chain exists but nothing is installed → ToolUnavailableError with
      install guidance for every candidate.

The resolver never executes commands — it only returns FixActions.
Deterministic: same failure + same installed tools → same action, always.
"""
import os
import shutil
import logging
from typing import Callable, Dict, Optional, Tuple

from ci_engine.core.constants import ErrorKind
from ci_engine.core.errors import ToolUnavailableError
from ci_engine.executor.project_detector import detect_ecosystem
from ci_engine.models.check_snapshot import FailureDetail
from ci_engine.models.fix_attempt import FixAction

logger = logging.getLogger(__name__)

# Placeholder expanded to the affected files of the ecosystem (or ".")
FILES = "{files}"


# ---------------------------------------------------------------------------
# Fix chains: (ecosystem, ErrorKind) → candidate actions, in priority order
# ---------------------------------------------------------------------------
_FIX_MAP: Dict[Tuple[str, ErrorKind], Tuple[FixAction, ...]] = {
    ("python", ErrorKind.LINT_ERROR): (
        FixAction(
            tool="ruff", args=("format", FILES), safe=True, description="ruff format",
            verify_tool="ruff", verify_args=("format", "--check", FILES),
            install_hint="pip install ruff",
        ),
        FixAction(
            tool="black", args=(FILES,), safe=True, description="black",
            verify_tool="black", verify_args=("--check", FILES),
            install_hint="pip install black",
        ),
        FixAction(
            tool="ruff", args=("check", "--fix", FILES), safe=False, description="ruff check --fix",
            verify_tool="ruff", verify_args=("check", FILES),
            install_hint="pip install ruff",
        ),
    ),
    ("python", ErrorKind.SECURITY_FINDING): (
        FixAction(
            tool="pip-audit", args=("-r", "requirements.txt", "--fix"), safe=False,
            description="pip-audit --fix",
            verify_tool="pip-audit", verify_args=("-r", "requirements.txt"),
            install_hint="pip install pip-audit",
        ),
    ),
    ("node", ErrorKind.LINT_ERROR): (
        FixAction(
            tool="prettier", args=("--write", FILES), safe=True, description="prettier --write",
            verify_tool="prettier", verify_args=("--check", FILES),
            install_hint="npm install -D prettier",
        ),
        FixAction(
            tool="eslint", args=("--fix", FILES), safe=False, description="eslint --fix",
            verify_tool="eslint", verify_args=(FILES,),
            install_hint="npm install -D eslint",
        ),
    ),
    ("node", ErrorKind.SECURITY_FINDING): (
        FixAction(
            tool="npm", args=("audit", "fix"), safe=False, description="npm audit fix",
            verify_tool="npm", verify_args=("audit",),
            install_hint="Install Node.js (ships with npm): https://nodejs.org",
        ),
    ),
    ("go", ErrorKind.LINT_ERROR): (
        FixAction(
            tool="gofmt", args=("-w", FILES), safe=True, description="gofmt -w",
            verify_tool="gofmt", verify_args=("-l", FILES), verify_counts_lines=True,
            install_hint="Install Go: https://go.dev/dl/",
        ),
        FixAction(
            tool="goimports", args=("-w", FILES), safe=True, description="goimports -w",
            verify_tool="goimports", verify_args=("-l", FILES), verify_counts_lines=True,
            install_hint="go install golang.org/x/tools/cmd/goimports@latest",
        ),
    ),
    ("rust", ErrorKind.LINT_ERROR): (
        FixAction(
            tool="cargo", args=("fmt",), safe=True, description="cargo fmt",
            verify_tool="cargo", verify_args=("fmt", "--check"),
            install_hint="rustup component add rustfmt",
        ),
        FixAction(
            tool="cargo", args=("clippy", "--fix", "--allow-dirty"), safe=False,
            description="cargo clippy --fix",
            verify_tool="cargo", verify_args=("clippy",),
            install_hint="rustup component add clippy",
        ),
    ),
}

_ECOSYSTEM_EXTENSIONS: Dict[str, Tuple[str, ...]] = {
    "python": (".py", ".pyi"),
    "node": (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"),
    "go": (".go",),
    "rust": (".rs",),
}


def get_fix_chain(ecosystem: Optional[str], kind: ErrorKind) -> Tuple[FixAction, ...]:
    """Return the candidate chain for (ecosystem, kind); empty when unsupported."""
    if ecosystem is None:
        return ()
    return _FIX_MAP.get((ecosystem, kind), ())


def get_supported_fixes() -> list[tuple[str, str]]:
    """All (ecosystem, error kind) pairs that have fix chains."""
    return sorted((eco, kind.value) for eco, kind in _FIX_MAP)


class FixResolver:
    """
    Resolves a FailureDetail to one concrete, runnable FixAction.

    Parameters
    ----------
    workspace_path : str
        Working tree root (marker-file detection and local node binaries).
    which : callable
        PATH lookup, shutil.which by default.
    """

    def __init__(self, workspace_path: str, which: Callable[[str], Optional[str]] = shutil.which) -> None:
        self.workspace_path = workspace_path
        self.which = which

    def ecosystem_for(self, failure: FailureDetail) -> Optional[str]:
        return detect_ecosystem(failure.affected_files, self.workspace_path)

    def chain_for(self, failure: FailureDetail) -> Tuple[FixAction, ...]:
        return get_fix_chain(self.ecosystem_for(failure), failure.error_kind)

    def can_resolve(self, failure: FailureDetail, allow_unsafe: bool = False) -> bool:
        """True if the failure's chain holds an action allow_unsafe permits (tools not checked)."""
        return any(a.safe or allow_unsafe for a in self.chain_for(failure))

    def resolve(self, failure: FailureDetail, allow_unsafe: bool = False) -> Optional[FixAction]:
        """
        Pick the first runnable action of the failure's chain.

        Returns
        -------
        FixAction | None
            Action with tool paths located and {files} expanded, or None
            when no action applies.

        Raises
        ------
        ToolUnavailableError
            Candidates exist but none of their tools is installed.
        """
        ecosystem = self.ecosystem_for(failure)
        chain = get_fix_chain(ecosystem, failure.error_kind)
        if not chain:
            logger.info("No fix chain for %s (%s, %s)", failure.check_name, ecosystem, failure.error_kind.value)
            return None

        candidates = [a for a in chain if a.safe or allow_unsafe]
        if not candidates:
            logger.info("Only unsafe fixes exist for %s; allow_unsafe is off", failure.check_name)
            return None

        missing: list[str] = []
        hints: list[str] = []
        for action in candidates:
            tool_path = self._locate(action.tool)
            verify_path = self._locate(action.verify_tool) if action.verify_tool else ""
            if tool_path and (verify_path or not action.verify_tool):
                logger.info("Resolved fix for %s: %s", failure.check_name, action.description)
                return self._bind(action, ecosystem, failure, tool_path, verify_path)

            for tool, found in ((action.tool, tool_path), (action.verify_tool, verify_path)):
                if tool and not found and tool not in missing:
                    missing.append(tool)
            if action.install_hint and action.install_hint not in hints:
                hints.append(action.install_hint)

        raise ToolUnavailableError(missing, hints)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _locate(self, tool: str) -> Optional[str]:
        if self.workspace_path:
            local = os.path.join(self.workspace_path, "node_modules", ".bin", tool)
            if os.path.isfile(local) and os.access(local, os.X_OK):
                return local
        return self.which(tool)

    def _bind(
        self,
        action: FixAction,
        ecosystem: str,
        failure: FailureDetail,
        tool_path: str,
        verify_path: str,
    ) -> FixAction:
        extensions = _ECOSYSTEM_EXTENSIONS.get(ecosystem, ())
        files = tuple(f for f in failure.affected_files if f.endswith(extensions)) or (".",)

        def expand(args: Tuple[str, ...]) -> Tuple[str, ...]:
            expanded: list[str] = []
            for arg in args:
                if arg == FILES:
                    expanded.extend(files)
                else:
                    expanded.append(arg)
            return tuple(expanded)

        return action.model_copy(update={
            "tool": tool_path,
            "args": expand(action.args),
            "verify_tool": verify_path or action.verify_tool,
            "verify_args": expand(action.verify_args),
        })
