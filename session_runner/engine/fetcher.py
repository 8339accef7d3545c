"""Session Runner - Package Fetcher

Downloads a named, versioned package archive from the registry:
- URL built from a template (name/version lower-cased)
- Streamed straight to disk (never buffered whole in memory)
- Size cap enforced while streaming
- Single attempt; callers wrap with their own retry if they want one
"""

import logging
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

from session_runner.config import settings
from session_runner.errors import NetworkError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536


def _human_size(size_bytes: int) -> str:
    """Convert bytes to human-readable size"""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


class PackageFetcher:
    """Fetches package archives from an HTTP(S) registry"""

    def __init__(
        self,
        host: str = None,
        url_template: str = None,
        extension: str = None,
        timeout: float = None,
        max_size_mb: int = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host = host or settings.REGISTRY_HOST
        self.url_template = url_template or settings.REGISTRY_URL_TEMPLATE
        self.extension = extension or settings.ARCHIVE_EXTENSION
        self.timeout = timeout or settings.FETCH_TIMEOUT
        self.max_bytes = (max_size_mb or settings.MAX_PACKAGE_SIZE_MB) * 1024 * 1024
        self._transport = transport

    @classmethod
    def from_registry(cls, registry: dict, transport=None) -> "PackageFetcher":
        """Build a fetcher from Settings.registry_settings() output."""
        return cls(
            host=registry.get('host'),
            url_template=registry.get('url_template'),
            extension=registry.get('extension'),
            timeout=registry.get('timeout'),
            max_size_mb=registry.get('max_size_mb'),
            transport=transport,
        )

    def package_url(self, name: str, version: str) -> str:
        return self.url_template.format(
            host=self.host,
            name=name.lower(),
            version=version.lower(),
            ext=self.extension,
        )

    def archive_name(self, name: str) -> str:
        return f"{name}.{self.extension}"

    async def fetch(self, name: str, full_version: str, dest_path: Path) -> Path:
        """Download one package archive to dest_path.

        Args:
            name: Package name as published in the registry
            full_version: Exact artifact version (may include a pre-release suffix)
            dest_path: File to create; must be inside the session directory

        Returns:
            dest_path, now holding the archive bytes

        Raises:
            NetworkError: unreachable host, timeout, non-success status,
                oversize body, or write failure
        """
        url = self.package_url(name, full_version)
        logger.info(f"Fetching package {name} {full_version} from {url}")

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                max_redirects=10,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise NetworkError(
                            f"HTTP {response.status_code} fetching {name} {full_version} from {url}",
                            url=url,
                        )

                    content_length = response.headers.get('content-length')
                    if content_length and int(content_length) > self.max_bytes:
                        raise NetworkError(
                            f"Package {name} is too large: {_human_size(int(content_length))} "
                            f"(max {_human_size(self.max_bytes)})",
                            url=url,
                        )

                    total_bytes = 0
                    async with aiofiles.open(dest_path, 'wb') as f:
                        async for chunk in response.aiter_bytes(chunk_size=CHUNK_SIZE):
                            total_bytes += len(chunk)
                            if total_bytes > self.max_bytes:
                                raise NetworkError(
                                    f"Package {name} exceeded {_human_size(self.max_bytes)} during download",
                                    url=url,
                                )
                            await f.write(chunk)

        except NetworkError:
            dest_path.unlink(missing_ok=True)
            raise
        except httpx.TimeoutException:
            dest_path.unlink(missing_ok=True)
            raise NetworkError(
                f"Timed out after {self.timeout}s fetching {name} {full_version} from {url}",
                url=url,
            )
        except httpx.HTTPError as e:
            dest_path.unlink(missing_ok=True)
            raise NetworkError(f"Failed to fetch {name} {full_version} from {url}: {e}", url=url)
        except OSError as e:
            dest_path.unlink(missing_ok=True)
            raise NetworkError(f"Failed to write {dest_path.name}: {e}", url=url)

        logger.info(f"Fetched {name} {full_version} ({_human_size(total_bytes)}) -> {dest_path}")
        return dest_path
