"""Session Runner - Package Installer

Extracts a fetched archive into <session dir>/<package name>/.
The target must not exist yet: a collision means a duplicate or corrupted
session and is refused. Registry packaging metadata is not extracted.
"""

import asyncio
import logging
import zipfile
from pathlib import Path, PurePosixPath

from session_runner.errors import ExtractionError

logger = logging.getLogger(__name__)

# Packaging metadata written by the registry, not part of the module tree
SKIPPED_ENTRIES = {'[Content_Types].xml'}
SKIPPED_PREFIXES = ('_rels/', 'package/')
SKIPPED_SUFFIXES = ('.nuspec',)


def _is_metadata(entry_name: str) -> bool:
    return (
        entry_name in SKIPPED_ENTRIES
        or entry_name.startswith(SKIPPED_PREFIXES)
        or entry_name.endswith(SKIPPED_SUFFIXES)
    )


def _safe_target(dest_dir: Path, entry_name: str) -> Path:
    """Resolve an archive entry below dest_dir, refusing anything that escapes it."""
    entry = PurePosixPath(entry_name.replace('\\', '/'))
    if entry.is_absolute() or '..' in entry.parts:
        raise ExtractionError(f"Archive entry escapes the module directory: {entry_name}")
    return dest_dir.joinpath(*entry.parts)


class PackageInstaller:
    """Unpacks package archives into isolated, package-named directories"""

    def _extract(self, archive_path: Path, dest_dir: Path) -> Path:
        if dest_dir.exists():
            raise ExtractionError(f"Extraction target already exists: {dest_dir}")

        try:
            with zipfile.ZipFile(archive_path) as archive:
                bad_entry = archive.testzip()
                if bad_entry is not None:
                    raise ExtractionError(f"Corrupt entry {bad_entry} in {archive_path.name}")

                dest_dir.mkdir(parents=True)
                extracted = 0
                for info in archive.infolist():
                    if _is_metadata(info.filename):
                        continue
                    target = _safe_target(dest_dir, info.filename)
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with archive.open(info) as src, open(target, 'wb') as dst:
                        while True:
                            block = src.read(65536)
                            if not block:
                                break
                            dst.write(block)
                    extracted += 1
        except ExtractionError:
            raise
        except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
            raise ExtractionError(f"Unreadable archive {archive_path.name}: {e}")
        except OSError as e:
            raise ExtractionError(f"Failed to extract {archive_path.name}: {e}")

        logger.info(f"Extracted {extracted} files from {archive_path.name} -> {dest_dir}")
        return dest_dir

    async def extract(self, archive_path: Path, dest_dir: Path) -> Path:
        """Extract archive_path into dest_dir (which must not exist).

        Returns the module root directory.

        Raises:
            ExtractionError: target exists, archive unreadable or corrupt
        """
        return await asyncio.to_thread(self._extract, archive_path, dest_dir)
