"""Session Runner - Script Executor

Stages one session's work and invokes the session host exactly once:
1. Provision: fetch + extract the bootstrap and required packages into
   the session directory (fatal on any failure)
2. Stage, in fixed order: trust elevation, bootstrap import, conditional
   meta-package install, declared module imports, caller fragments
3. Invoke: one child interpreter over the whole queue, channel records
   read as they stream, bounded by EXECUTION_TIMEOUT

Only failures outside the interpreter are raised. Anything that goes
wrong inside a fragment arrives as an error-channel record.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from session_runner.config import settings
from session_runner.engine.context import SessionContext
from session_runner.engine.fetcher import PackageFetcher
from session_runner.engine.fragments import (
    ElevateTrust,
    EnsurePackage,
    ImportModule,
    InvocationPayload,
)
from session_runner.engine.installer import PackageInstaller
from session_runner.errors import InvocationError
from session_runner.models import Channel, ChannelRecord, PackageSpec

logger = logging.getLogger(__name__)

# Makes the runner importable in the child even when it is not installed;
# appended, so the session directory keeps precedence on the module path.
HOST_BOOTSTRAP = (
    "import sys; sys.path.append(sys.argv[1]); "
    "from session_runner.engine.host import main; sys.exit(main())"
)
RUNNER_ROOT = str(Path(__file__).resolve().parents[2])

STREAM_LIMIT = 16 * 1024 * 1024


class RawInvocation:
    """Channel records and process details gathered from one host invocation"""

    def __init__(self):
        self.records: List[ChannelRecord] = []
        self.return_code: Optional[int] = None
        self.stderr: str = ""

    def add_line(self, line: bytes):
        text = line.decode('utf-8', errors='replace').rstrip('\r\n')
        if not text:
            return
        try:
            record = ChannelRecord.model_validate_json(text)
        except ValidationError:
            record = ChannelRecord(channel=Channel.INFORMATION, text=text)
        self.records.append(record)

    def channel(self, channel: Channel) -> List[str]:
        return [r.text for r in self.records if r.channel == channel]


class ScriptExecutor:
    """Provisions packages and runs queued fragments in one session host"""

    def __init__(
        self,
        fetcher: PackageFetcher = None,
        installer: PackageInstaller = None,
        bootstrap: Optional[PackageSpec] = None,
        meta: Optional[PackageSpec] = None,
        required: Optional[List[PackageSpec]] = None,
    ):
        self.fetcher = fetcher or PackageFetcher()
        self.installer = installer or PackageInstaller()
        self.bootstrap = bootstrap if bootstrap is not None else settings.BOOTSTRAP_PACKAGE
        self.meta = meta if meta is not None else settings.META_PACKAGE
        self.required = list(required if required is not None else settings.REQUIRED_PACKAGES)
        self._queue: list = []

    def queue(self, fragment):
        """Append a caller fragment; caller fragments run last, in queue order."""
        self._queue.append(fragment)

    # ================================================================
    # Provisioning
    # ================================================================

    async def _provision_one(self, context: SessionContext, package: PackageSpec) -> ImportModule:
        archive_path = context.working_dir / self.fetcher.archive_name(package.name)
        module_dir = context.working_dir / package.name
        await self.fetcher.fetch(package.name, package.full_version, archive_path)
        await self.installer.extract(archive_path, module_dir)
        return ImportModule(name=package.name, path=str(module_dir), version=package.import_version)

    async def provision(self, context: SessionContext) -> List[ImportModule]:
        """Fetch and extract every package, returning their import fragments in list order.

        Raises the first FatalError in list order. With FETCH_CONCURRENCY > 1
        packages are provisioned concurrently, and all of them have settled
        before this returns or raises.
        """
        packages = ([self.bootstrap] if self.bootstrap else []) + self.required
        if not packages:
            return []

        concurrency = max(1, settings.FETCH_CONCURRENCY)
        if concurrency == 1:
            imports = []
            for package in packages:
                imports.append(await self._provision_one(context, package))
            return imports

        semaphore = asyncio.Semaphore(concurrency)

        async def _bounded(package):
            async with semaphore:
                return await self._provision_one(context, package)

        outcomes = await asyncio.gather(
            *[_bounded(p) for p in packages], return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    def stage(self, context: SessionContext, imports: List[ImportModule]) -> list:
        """Build the full fragment queue in its fixed order."""
        fragments = [ElevateTrust(level=context.execution_trust)]
        remaining = list(imports)
        if self.bootstrap and remaining:
            fragments.append(remaining.pop(0))
        if self.meta:
            fragments.append(EnsurePackage(
                name=self.meta.name,
                import_version=self.meta.import_version,
                full_version=self.meta.full_version,
            ))
        fragments.extend(remaining)
        fragments.extend(self._queue)
        return fragments

    # ================================================================
    # Invocation
    # ================================================================

    async def _communicate(self, proc, payload: bytes, invocation: RawInvocation):
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            try:
                proc.stdin.write(payload)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.warning("Session host closed stdin before reading the payload")
            finally:
                proc.stdin.close()

            try:
                async for line in proc.stdout:
                    invocation.add_line(line)
            except (ValueError, asyncio.LimitOverrunError):
                raise InvocationError(
                    f"Session host wrote a record larger than {STREAM_LIMIT} bytes"
                )

            invocation.stderr = (await stderr_task).decode('utf-8', errors='replace')
            invocation.return_code = await proc.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    async def invoke(self, context: SessionContext, fragments: list, invocation: RawInvocation):
        """Run the session host once over all fragments.

        Raises:
            InvocationError: host could not start, exited abnormally, or timed out
        """
        payload = InvocationPayload(
            session_id=context.id,
            working_dir=str(context.working_dir),
            location=str(context.location),
            environment=context.env_overlay,
            max_output_size=settings.MAX_OUTPUT_SIZE,
            constrained_modules=settings.CONSTRAINED_MODULES,
            registry=settings.registry_settings(),
            fragments=fragments,
        )
        env = dict(os.environ)
        env.update(context.env_overlay)

        timeout = settings.EXECUTION_TIMEOUT
        logger.info(f"Session {context.id}: invoking host with {len(fragments)} fragments, timeout={timeout}s")

        try:
            proc = await asyncio.create_subprocess_exec(
                settings.PYTHON_EXECUTABLE, '-c', HOST_BOOTSTRAP, RUNNER_ROOT,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(context.working_dir),
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise InvocationError(f"Failed to start session host: {e}")

        try:
            await asyncio.wait_for(
                self._communicate(proc, payload.model_dump_json().encode('utf-8'), invocation),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise InvocationError(f"Execution timed out after {timeout} seconds")
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        if invocation.return_code != 0:
            tail = "\n".join(invocation.stderr.strip().splitlines()[-10:])
            raise InvocationError(
                f"Session host exited with code {invocation.return_code}"
                + (f": {tail}" if tail else "")
            )

    async def run(self, context: SessionContext, invocation: RawInvocation = None) -> RawInvocation:
        """Provision, stage and invoke. The session directory must already exist.

        Records gathered before a failure stay on the invocation passed in.
        """
        invocation = invocation if invocation is not None else RawInvocation()
        imports = await self.provision(context)
        fragments = self.stage(context, imports)
        await self.invoke(context, fragments, invocation)
        logger.info(
            f"Session {context.id}: host finished, "
            f"{len(invocation.channel(Channel.OUTPUT))} outputs, "
            f"{len(invocation.channel(Channel.ERROR))} errors"
        )
        return invocation
