"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    GITHUB_TOKEN               — Token used to read check runs / commit statuses
    GITHUB_API_URL             — API root (default: https://api.github.com)
    CI_REPO_URL                — Repository URL the engine polls (main.py)
    CI_REVISION                — Commit SHA to watch (main.py, default: HEAD)
    CI_POLL_TIMEOUT            — Seconds to wait for a terminal CI state (default: 1800)
    CI_POLL_INITIAL_INTERVAL   — First poll interval in seconds (default: 5)
    CI_POLL_MAX_INTERVAL       — Interval cap in seconds (default: 30)
    CI_POLL_STRATEGY           — fixed / exponential / adaptive (default: adaptive)
    CI_BACKOFF_MULTIPLIER      — Growth factor for backoff strategies (default: 1.5)
    CI_FAIL_FAST               — Stop waiting on the first critical failure (default: true)
    CI_MAX_FETCH_RETRIES       — Transient fetch errors tolerated per wait (default: 5)
    CI_NO_CHECKS_GRACE_PERIOD  — Seconds of "0 checks" before concluding none exist (default: 20)
    CI_FETCH_TIMEOUT           — Per-request HTTP timeout in seconds (default: 20)
    ENABLE_REMEDIATION         — Attempt automatic fixes on fixable failures (default: true)
    FIX_MAX_ATTEMPTS           — Fix attempts per distinct failure (default: 2)
    FIX_ALLOW_UNSAFE           — Allow behaviour-changing fixes (default: false)
    FIX_PROCESS_TIMEOUT        — Seconds a single fix / verifier process may run (default: 300)
    FIX_PUBLISH                — Commit + push applied fixes before re-polling (default: false)
    FIX_DRY_RUN                — Resolve and log fixes without running them (default: false)
    CI_ENGINE_DEADLINE         — Overall budget in seconds for one run (default: none)
    CI_RESULTS_PATH            — Also write the JSON Result to this file (default: none)
    CI_WORKSPACE               — Working tree to operate on (main.py, default: cwd)
    CI_ENGINE_DEBUG            — DEBUG logging when set (main.py)

Grace Period:
    A freshly pushed revision often reports zero checks for a few seconds
    while the provider registers workflows. CI_NO_CHECKS_GRACE_PERIOD bounds
    how long "0 checks" is treated as "not registered yet" before the engine
    concludes the repository has no CI configured.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


GITHUB_TOKEN = os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN") or ""
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
CI_REPO_URL = os.getenv("CI_REPO_URL", "")
CI_REVISION = os.getenv("CI_REVISION", "")

# Polling
CI_POLL_TIMEOUT = float(os.getenv("CI_POLL_TIMEOUT", 1800))
CI_POLL_INITIAL_INTERVAL = float(os.getenv("CI_POLL_INITIAL_INTERVAL", 5))
CI_POLL_MAX_INTERVAL = float(os.getenv("CI_POLL_MAX_INTERVAL", 30))
CI_POLL_STRATEGY = os.getenv("CI_POLL_STRATEGY", "adaptive")
CI_BACKOFF_MULTIPLIER = float(os.getenv("CI_BACKOFF_MULTIPLIER", 1.5))
CI_FAIL_FAST = _env_bool("CI_FAIL_FAST", True)
CI_MAX_FETCH_RETRIES = int(os.getenv("CI_MAX_FETCH_RETRIES", 5))
CI_NO_CHECKS_GRACE_PERIOD = float(os.getenv("CI_NO_CHECKS_GRACE_PERIOD", 20))
CI_FETCH_TIMEOUT = float(os.getenv("CI_FETCH_TIMEOUT", 20))

# Remediation
ENABLE_REMEDIATION = _env_bool("ENABLE_REMEDIATION", True)
FIX_MAX_ATTEMPTS = int(os.getenv("FIX_MAX_ATTEMPTS", 2))
FIX_ALLOW_UNSAFE = _env_bool("FIX_ALLOW_UNSAFE", False)
FIX_PROCESS_TIMEOUT = float(os.getenv("FIX_PROCESS_TIMEOUT", 300))
FIX_PUBLISH = _env_bool("FIX_PUBLISH", False)
FIX_DRY_RUN = _env_bool("FIX_DRY_RUN", False)

# Whole-run budget in seconds (polls + fixes); empty means no overall deadline
CI_ENGINE_DEADLINE = float(os.getenv("CI_ENGINE_DEADLINE")) if os.getenv("CI_ENGINE_DEADLINE") else None
CI_RESULTS_PATH = os.getenv("CI_RESULTS_PATH", "")
