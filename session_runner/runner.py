"""Session Runner - Public Entry Points

run_script / run_script_file each drive one isolated session:

    context -> session directory -> provision -> invoke host once
            -> aggregate -> reap directory -> ExecutionResult

Callers always get a fully populated ExecutionResult. Fatal provisioning
or invocation failures come back as failed=True results; teardown
failures are only logged. Cancellation and an unusable base directory
are the only things that propagate.
"""

import logging
import time
from pathlib import Path
from typing import Dict, Optional

import aiofiles

from session_runner.engine.aggregator import ResultAggregator, aggregator as default_aggregator
from session_runner.engine.context import build_session_context, session_scope
from session_runner.engine.executor import RawInvocation, ScriptExecutor
from session_runner.engine.fetcher import PackageFetcher
from session_runner.engine.fragments import Script, SetLocation
from session_runner.engine.installer import PackageInstaller
from session_runner.engine.reaper import SessionReaper
from session_runner.errors import FatalError, ProvisionError
from session_runner.models import ExecutionResult, ExecutionTrust

logger = logging.getLogger(__name__)


class SessionRunner:
    """Runs scripts in isolated, ephemeral sessions"""

    def __init__(
        self,
        fetcher: PackageFetcher = None,
        installer: PackageInstaller = None,
        reaper: SessionReaper = None,
        aggregator: ResultAggregator = None,
        base_dir: Optional[Path] = None,
        trust: Optional[ExecutionTrust] = None,
        executor_options: Optional[Dict] = None,
    ):
        self.fetcher = fetcher
        self.installer = installer
        self.reaper = reaper or SessionReaper()
        self.aggregator = aggregator or default_aggregator
        self.base_dir = base_dir
        self.trust = trust
        self.executor_options = executor_options or {}

    def _executor(self) -> ScriptExecutor:
        return ScriptExecutor(
            fetcher=self.fetcher,
            installer=self.installer,
            **self.executor_options,
        )

    async def _run(self, stage, environment: Optional[Dict[str, str]]) -> ExecutionResult:
        context = build_session_context(environment, trust=self.trust, base_dir=self.base_dir)
        invocation = RawInvocation()
        start_time = time.time()

        try:
            async with session_scope(context, reaper=self.reaper):
                executor = self._executor()
                await stage(executor, context)
                await executor.run(context, invocation)
            result = self.aggregator.aggregate(invocation)
        except FatalError as e:
            logger.error(f"Session {context.id} aborted: {e}")
            result = self.aggregator.aggregate_fatal(invocation, e)

        result.session_id = context.id
        result.duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Session {context.id} completed: failed={result.failed}, "
            f"outputs={len(result.outputs)}, errors={len(result.error_messages)}, "
            f"time={result.duration_ms}ms"
        )
        return result

    async def run_script(self, script_text: str, environment: Optional[Dict[str, str]] = None) -> ExecutionResult:
        """Run script text in a fresh session.

        Args:
            script_text: Python source; a top-level `return` emits its value
            environment: Extra environment entries for the session

        Returns:
            ExecutionResult
        """
        async def stage(executor, context):
            executor.queue(Script(text=script_text))

        return await self._run(stage, environment)

    async def run_script_file(self, path, environment: Optional[Dict[str, str]] = None) -> ExecutionResult:
        """Run a script file in a fresh session.

        Relative paths inside the script resolve against the file's own
        directory. An unreadable file fails the run.
        """
        script_path = Path(path).expanduser().resolve()

        async def stage(executor, context):
            try:
                async with aiofiles.open(script_path, 'r', encoding='utf-8') as f:
                    text = await f.read()
            except (OSError, UnicodeDecodeError) as e:
                raise ProvisionError(f"Cannot read script file {script_path}: {e}")
            executor.queue(SetLocation(directory=str(script_path.parent)))
            executor.queue(Script(text=text, origin=str(script_path)))

        return await self._run(stage, environment)


# Singleton runner
runner = SessionRunner()


async def run_script(script_text: str, environment: Optional[Dict[str, str]] = None) -> ExecutionResult:
    return await runner.run_script(script_text, environment)


async def run_script_file(path, environment: Optional[Dict[str, str]] = None) -> ExecutionResult:
    return await runner.run_script_file(path, environment)
