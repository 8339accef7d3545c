"""Session Runner - Session Host

The interpreter side of one session. Started once per session as a child
process by ScriptExecutor:

    python -m session_runner.engine.host  < payload.json

Reads one InvocationPayload from stdin, runs its fragments in order in a
single shared namespace, and writes one JSON ChannelRecord per line to
the original stdout as it goes. fd 1 is redirected to stderr for the
rest of the run, so only records reach the parent on that pipe.

Fragment failures never stop the invocation: each one is written to the
error channel and the next fragment runs.

Script fragments:
- A top-level `return value` ends the fragment and emits value
- Top-level expression statements with a non-None value are emitted
- print() goes to the information channel, stderr to the warning channel
- Helpers: emit, write_error, write_warning, write_verbose, write_debug,
  write_progress, write_information, env, location, modules, SESSION_DIR
"""

import ast
import asyncio
import builtins
import importlib.util
import io
import os
import sys
import traceback
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Optional

from session_runner.models import Channel, ChannelRecord, ExecutionTrust
from session_runner.engine.fragments import (
    ElevateTrust,
    EnsurePackage,
    ImportModule,
    InvocationPayload,
    Script,
    SetLocation,
)

RETURN_HOOK = '__fragment_return__'
EMIT_HOOK = '__fragment_emit__'

BLOCKED_BUILTINS = {
    'eval', 'exec', 'compile', 'globals', 'locals', 'vars',
    'exit', 'quit', 'breakpoint', 'input', 'help',
}


# ============================================================
# Channel plumbing
# ============================================================

class ChannelWriter:
    """Serialises channel records onto the protocol stream"""

    def __init__(self, stream, max_output_size: int):
        self.stream = stream
        self.max_output_size = max_output_size

    def write(self, channel: Channel, text: str):
        record = ChannelRecord(channel=channel, text=text[:self.max_output_size])
        self.stream.write(record.model_dump_json() + '\n')
        self.stream.flush()


class ChannelStream(io.TextIOBase):
    """File-like object that turns written lines into channel records"""

    def __init__(self, writer: ChannelWriter, channel: Channel):
        self._writer = writer
        self._channel = channel
        self._buffer = ''

    def writable(self):
        return True

    def write(self, s):
        self._buffer += s
        while '\n' in self._buffer:
            line, self._buffer = self._buffer.split('\n', 1)
            self._writer.write(self._channel, line)
        return len(s)

    def flush(self):
        if self._buffer:
            self._writer.write(self._channel, self._buffer)
            self._buffer = ''


class _FragmentReturn(BaseException):
    """Carries a top-level `return` value out of a script fragment"""

    def __init__(self, value):
        super().__init__()
        self.value = value


# ============================================================
# Script compilation
# ============================================================

class _FragmentRewriter(ast.NodeTransformer):
    """Rewrites top-level `return` and bare expressions into hook calls.

    Function, lambda and class bodies are left untouched.
    """

    def visit_FunctionDef(self, node):
        return node

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_Lambda = visit_FunctionDef
    visit_ClassDef = visit_FunctionDef

    def visit_Return(self, node):
        value = node.value if node.value is not None else ast.Constant(value=None)
        raise_node = ast.Raise(
            exc=ast.Call(func=ast.Name(id=RETURN_HOOK, ctx=ast.Load()), args=[value], keywords=[]),
            cause=None,
        )
        return ast.copy_location(raise_node, node)

    def visit_Module(self, node):
        body = []
        for stmt in node.body:
            if isinstance(stmt, ast.Expr):
                call = ast.Call(
                    func=ast.Name(id=EMIT_HOOK, ctx=ast.Load()),
                    args=[self.visit(stmt.value)],
                    keywords=[],
                )
                body.append(ast.copy_location(ast.Expr(value=call), stmt))
            else:
                body.append(self.visit(stmt))
        node.body = body
        return node


def compile_fragment(text: str, origin: str = '<script>'):
    """Compile script text so top-level return/expressions reach the output channel.

    Raises SyntaxError on invalid source.
    """
    tree = ast.parse(text, filename=origin, mode='exec')
    tree = _FragmentRewriter().visit(tree)
    ast.fix_missing_locations(tree)
    return compile(tree, origin, 'exec')


# ============================================================
# Host
# ============================================================

class SessionHost:
    """Runs the fragments of one invocation in a shared namespace"""

    def __init__(self, payload: InvocationPayload, writer: ChannelWriter):
        self.payload = payload
        self.writer = writer
        self.session_dir = Path(payload.working_dir).resolve()
        self.location = Path(payload.location).resolve()
        self.trust = ExecutionTrust.RESTRICTED
        self.modules: Dict[str, object] = {}
        self.namespace = self._build_namespace()

    # ------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------

    def emit(self, value):
        if value is None:
            return
        self.writer.write(Channel.OUTPUT, str(value))

    def _writer_for(self, channel: Channel):
        def _write(message):
            self.writer.write(channel, str(message))
        _write.__name__ = f"write_{channel.value}"
        return _write

    def write_progress(self, activity, percent: Optional[float] = None):
        text = str(activity) if percent is None else f"{activity} ({percent}%)"
        self.writer.write(Channel.PROGRESS, text)

    def fail(self, message: str):
        self.writer.write(Channel.ERROR, message)

    # ------------------------------------------------------------
    # Namespace and builtins
    # ------------------------------------------------------------

    def _build_namespace(self) -> Dict:
        namespace = {
            '__name__': '__session__',
            '__builtins__': {},
            RETURN_HOOK: _FragmentReturn,
            EMIT_HOOK: self.emit,
            'emit': self.emit,
            'write_error': self._writer_for(Channel.ERROR),
            'write_warning': self._writer_for(Channel.WARNING),
            'write_verbose': self._writer_for(Channel.VERBOSE),
            'write_debug': self._writer_for(Channel.DEBUG),
            'write_information': self._writer_for(Channel.INFORMATION),
            'write_progress': self.write_progress,
            'env': MappingProxyType(dict(self.payload.environment)),
            'location': lambda: str(self.location),
            'modules': MappingProxyType(self.modules),
            'SESSION_DIR': str(self.session_dir),
        }
        return namespace

    def _resolve(self, filepath) -> Path:
        path = Path(filepath)
        if not path.is_absolute():
            path = self.location / path
        return path.resolve()

    def _make_located_open(self, confined: bool):
        """open() that resolves relative paths against the current location.

        When confined, only the session directory and the current location
        are reachable.
        """
        def located_open(filepath, mode='r', *args, **kwargs):
            resolved = self._resolve(filepath)
            if confined:
                roots = (self.session_dir, self.location)
                if not any(resolved == root or root in resolved.parents for root in roots):
                    raise PermissionError(
                        f"Access denied: {filepath} is outside the session directory"
                    )
            if 'w' in mode or 'a' in mode:
                resolved.parent.mkdir(parents=True, exist_ok=True)
            return open(resolved, mode, *args, **kwargs)

        return located_open

    def _guarded_import(self, name, globals=None, locals=None, fromlist=(), level=0):
        root = name.split('.')[0]
        allowed = set(self.payload.constrained_modules)
        if level == 0 and (root in self.modules or root in allowed):
            return builtins.__import__(name, globals, locals, fromlist, level)
        raise ImportError(f"Import of '{name}' is not allowed at constrained trust")

    def _builtins_for(self, trust: ExecutionTrust) -> Dict:
        if trust == ExecutionTrust.FULL:
            full = dict(vars(builtins))
            full['open'] = self._make_located_open(confined=False)
            return full

        safe = {}
        for name in dir(builtins):
            if name.startswith('_') or name in BLOCKED_BUILTINS:
                continue
            safe[name] = getattr(builtins, name)
        safe['__build_class__'] = builtins.__build_class__
        safe['__import__'] = self._guarded_import
        safe['open'] = self._make_located_open(confined=True)
        return safe

    # ------------------------------------------------------------
    # Fragment handlers
    # ------------------------------------------------------------

    def elevate_trust(self, fragment: ElevateTrust):
        if fragment.level.rank > self.trust.rank:
            self.trust = fragment.level
            self.namespace['__builtins__'] = self._builtins_for(self.trust)
        self.writer.write(Channel.VERBOSE, f"Execution trust: {self.trust.value}")

    def import_module(self, fragment: ImportModule):
        module_dir = Path(fragment.path).resolve()
        if self.session_dir not in module_dir.parents:
            self.fail(f"ImportError: module path {fragment.path} is outside the session directory")
            return
        init_file = module_dir / '__init__.py'
        if not init_file.is_file():
            self.fail(f"ImportError: no module named '{fragment.name}' found at {fragment.path}")
            return

        spec = importlib.util.spec_from_file_location(
            fragment.name, init_file, submodule_search_locations=[str(module_dir)]
        )
        module = importlib.util.module_from_spec(spec)
        sys.modules[fragment.name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(fragment.name, None)
            self.fail(f"ImportError: loading module '{fragment.name}' failed: {type(e).__name__}: {e}")
            self.writer.write(Channel.DEBUG, traceback.format_exc())
            return

        declared = getattr(module, '__version__', None)
        if declared is not None and str(declared) != fragment.version:
            sys.modules.pop(fragment.name, None)
            self.fail(
                f"ImportError: module '{fragment.name}' version {fragment.version} "
                f"is not available (found {declared})"
            )
            return

        self.modules[fragment.name] = module
        if fragment.name.isidentifier():
            self.namespace[fragment.name] = module
        self.writer.write(Channel.VERBOSE, f"Imported module {fragment.name} {fragment.version}")

    def ensure_package(self, fragment: EnsurePackage):
        target = self.session_dir / fragment.name
        if target.exists():
            self.writer.write(Channel.VERBOSE, f"Package {fragment.name} already present")
            return
        if not self.payload.registry:
            self.fail(f"InstallError: no registry configured to install {fragment.name}")
            return

        from session_runner.engine.fetcher import PackageFetcher
        from session_runner.engine.installer import PackageInstaller
        from session_runner.errors import FatalError

        fetcher = PackageFetcher.from_registry(self.payload.registry)
        archive = self.session_dir / fetcher.archive_name(fragment.name)

        async def _install():
            await fetcher.fetch(fragment.name, fragment.full_version, archive)
            await PackageInstaller().extract(archive, target)

        try:
            asyncio.run(_install())
        except FatalError as e:
            self.fail(f"InstallError: {fragment.name} {fragment.full_version}: {e}")
            return
        self.writer.write(
            Channel.VERBOSE, f"Installed package {fragment.name} {fragment.full_version}"
        )

    def set_location(self, fragment: SetLocation):
        directory = Path(fragment.directory)
        if not directory.is_dir():
            self.fail(f"LocationError: {fragment.directory} is not a directory")
            return
        self.location = directory.resolve()
        self.writer.write(Channel.VERBOSE, f"Location: {self.location}")

    def run_script(self, fragment: Script):
        if self.trust == ExecutionTrust.RESTRICTED:
            self.fail(f"Script execution is disabled at restricted trust: {fragment.origin}")
            return
        try:
            code = compile_fragment(fragment.text, fragment.origin)
        except SyntaxError as e:
            self.fail(f"SyntaxError: {e}")
            return

        stdout_stream = ChannelStream(self.writer, Channel.INFORMATION)
        stderr_stream = ChannelStream(self.writer, Channel.WARNING)
        try:
            with redirect_stdout(stdout_stream), redirect_stderr(stderr_stream):
                exec(code, self.namespace)
        except _FragmentReturn as r:
            self.emit(r.value)
        except SystemExit as e:
            if e.code not in (None, 0):
                self.fail(f"SystemExit: {e.code}")
        except Exception as e:
            self.fail(f"{type(e).__name__}: {e}")
            self.writer.write(Channel.DEBUG, traceback.format_exc())
        finally:
            stdout_stream.flush()
            stderr_stream.flush()

    def run(self):
        handlers = {
            'elevate_trust': self.elevate_trust,
            'import_module': self.import_module,
            'ensure_package': self.ensure_package,
            'set_location': self.set_location,
            'script': self.run_script,
        }
        for fragment in self.payload.fragments:
            handlers[fragment.kind](fragment)


def _claim_protocol_stream():
    """Move the protocol off fd 1.

    Records go to a private duplicate of the original stdout; fd 1 itself is
    pointed at stderr, so raw writes from child processes or os.write(1, ...)
    land in the host's stderr instead of between records.
    """
    sys.stdout.flush()
    protocol_fd = os.dup(1)
    os.dup2(2, 1)
    return os.fdopen(protocol_fd, 'w', encoding='utf-8')


def main() -> int:
    payload = InvocationPayload.model_validate_json(sys.stdin.read())
    original_stdout = sys.stdout
    protocol = _claim_protocol_stream()
    writer = ChannelWriter(protocol, payload.max_output_size)

    # Anything printed outside a fragment (e.g. at module import) must not corrupt the protocol
    sys.stdout = ChannelStream(writer, Channel.INFORMATION)
    try:
        SessionHost(payload, writer).run()
    finally:
        sys.stdout.flush()
        sys.stdout = original_stdout
        protocol.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
