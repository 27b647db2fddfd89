"""
Project Detector
================
Detects the toolchain ecosystem a failure belongs to.

Detection order:
    1. Extensions of the failure's affected files (majority vote, ties by
       EXTENSION_MAP order)
    2. Marker files in the workspace root (SIGNAL_MAP order, first match wins)

Detection is deterministic — same files and same workspace always yield the
same ecosystem. No LLM is used. Pure heuristic matching only.
"""
import os
from typing import Iterable, Optional


# ---------------------------------------------------------------------------
# File extension → ecosystem (ordered by priority for ties)
# ---------------------------------------------------------------------------
EXTENSION_MAP: list[tuple[tuple[str, ...], str]] = [
    ((".py", ".pyi"),                                   "python"),
    ((".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"),    "node"),
    ((".go",),                                          "go"),
    ((".rs",),                                          "rust"),
]

# Dependency manifests also identify the ecosystem (security findings)
MANIFEST_MAP: dict[str, str] = {
    "requirements.txt": "python",
    "pyproject.toml":   "python",
    "poetry.lock":      "python",
    "package.json":     "node",
    "package-lock.json": "node",
    "yarn.lock":        "node",
    "go.mod":           "go",
    "go.sum":           "go",
    "Cargo.toml":       "rust",
    "Cargo.lock":       "rust",
}

# ---------------------------------------------------------------------------
# Signal File → ecosystem (ordered by priority)
# ---------------------------------------------------------------------------
SIGNAL_MAP: list[tuple[str, str]] = [
    ("package.json",     "node"),
    ("pyproject.toml",   "python"),
    ("requirements.txt", "python"),
    ("setup.py",         "python"),
    ("go.mod",           "go"),
    ("Cargo.toml",       "rust"),
]


def ecosystem_from_files(files: Iterable[str]) -> Optional[str]:
    """Vote on the ecosystem from affected file names; None when no file is recognized."""
    votes: dict[str, int] = {}
    for path in files:
        name = os.path.basename(path)
        ecosystem = MANIFEST_MAP.get(name)
        if ecosystem is None:
            for extensions, candidate in EXTENSION_MAP:
                if name.endswith(extensions):
                    ecosystem = candidate
                    break
        if ecosystem:
            votes[ecosystem] = votes.get(ecosystem, 0) + 1

    if not votes:
        return None
    priority = [eco for _, eco in EXTENSION_MAP]
    return max(votes, key=lambda eco: (votes[eco], -priority.index(eco)))


def detect_project_type(workspace_path: str) -> Optional[str]:
    """
    Scan the workspace root for signal files and return the ecosystem.

    Parameters
    ----------
    workspace_path : str
        Absolute path to the working tree root.

    Returns
    -------
    str | None
        "python", "node", "go" or "rust", or None if no signal file is found.
    """
    if not workspace_path or not os.path.isdir(workspace_path):
        return None

    for signal_file, project_type in SIGNAL_MAP:
        if os.path.isfile(os.path.join(workspace_path, signal_file)):
            return project_type

    return None


def detect_ecosystem(files: Iterable[str], workspace_path: str = "") -> Optional[str]:
    """Affected files first, then workspace marker files."""
    return ecosystem_from_files(files) or detect_project_type(workspace_path)
