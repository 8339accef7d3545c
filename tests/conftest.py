"""Shared fixtures: archive builder and an in-memory package registry."""

import io
import zipfile
from pathlib import Path
from typing import Dict

import httpx
import pytest

from session_runner.engine.fetcher import PackageFetcher


def make_archive(files: Dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def registry_transport(archives: Dict[str, bytes], seen: list = None) -> httpx.MockTransport:
    """Serve archives keyed by file name, e.g. 'greeter.1.0.0.zip'; 404 otherwise."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(str(request.url))
        filename = request.url.path.rsplit("/", 1)[-1]
        if filename in archives:
            return httpx.Response(200, content=archives[filename])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def unreachable_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Name or service not known", request=request)

    return httpx.MockTransport(handler)


GREETER_SOURCE = (
    "__version__ = '1.0.0'\n"
    "def greet(name):\n"
    "    return f'hello {name}'\n"
)


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    path = tmp_path / "sessions"
    path.mkdir()
    return path


@pytest.fixture
def greeter_archive() -> bytes:
    return make_archive({"__init__.py": GREETER_SOURCE})


@pytest.fixture
def greeter_fetcher(greeter_archive: bytes) -> PackageFetcher:
    return PackageFetcher(
        host="registry.test",
        transport=registry_transport({"greeter.1.0.0.zip": greeter_archive}),
    )
