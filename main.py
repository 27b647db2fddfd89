import os
import sys
import json
import asyncio
import logging
import subprocess

from ci_engine.agents.check_source import GitHubCheckSource
from ci_engine.agents.ci_monitor import CIMonitor, PollOptions
from ci_engine.agents.orchestrator import Orchestrator
from ci_engine.agents.remediation_engine import FixOptions, RemediationEngine
from ci_engine.core import config
from ci_engine.core.errors import EngineError
from ci_engine.executor.fix_resolver import FixResolver
from ci_engine.executor.process_runner import ProcessRunner
from ci_engine.services.publisher import GitPublisher
from ci_engine.services.results_writer import ResultsWriter
from ci_engine.services.workspace import GitWorkspace
from ci_engine.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging(level=logging.DEBUG if os.getenv("CI_ENGINE_DEBUG") else logging.INFO)
logger = logging.getLogger("main")

EXIT_CODES = {"succeeded": 0, "failed": 1, "timed_out": 2}


def _origin_url(workspace_path: str) -> str:
    res = subprocess.run(
        ["git", "remote", "get-url", "origin"],
        cwd=workspace_path,
        capture_output=True,
        text=True,
    )
    return res.stdout.strip() if res.returncode == 0 else ""


async def run_engine(workspace_path: str) -> int:
    workspace = GitWorkspace(workspace_path)
    repo_url = config.CI_REPO_URL or _origin_url(workspace_path)
    revision = config.CI_REVISION or workspace.head()
    poll_options = PollOptions.from_config()

    engine = RemediationEngine(
        workspace=workspace,
        runner=ProcessRunner(default_timeout=config.FIX_PROCESS_TIMEOUT),
        resolver=FixResolver(workspace_path),
        workspace_path=workspace_path,
    )
    publisher = GitPublisher(workspace_path) if config.FIX_PUBLISH else None

    async with GitHubCheckSource(
        repo_url,
        token=config.GITHUB_TOKEN,
        api_url=config.GITHUB_API_URL,
        timeout=poll_options.fetch_timeout,
    ) as source:
        orchestrator = Orchestrator(
            monitor=CIMonitor(source),
            engine=engine,
            publisher=publisher,
            poll_options=poll_options,
            fix_options=FixOptions.from_config(dry_run=config.FIX_DRY_RUN),
            enable_remediation=config.ENABLE_REMEDIATION,
            workspace_path=workspace_path,
        )
        result = await orchestrator.run(revision, deadline=config.CI_ENGINE_DEADLINE)

    print(result.to_json())
    if config.CI_RESULTS_PATH:
        ResultsWriter.write_results(result, config.CI_RESULTS_PATH)
    return EXIT_CODES[result.kind]


def main() -> int:
    workspace_path = os.getenv("CI_WORKSPACE", os.getcwd())
    try:
        return asyncio.run(run_engine(workspace_path))
    except EngineError as e:
        logger.error("Engine aborted: %s", e.message)
        print(json.dumps({"kind": "error", "error": e.to_dict()}))
        return 3


if __name__ == "__main__":
    sys.exit(main())
