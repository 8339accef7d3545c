"""Session Runner - Configuration

All settings are read from the environment (prefix SESSION_RUNNER_) or a
local .env file. Package lists are JSON, e.g.

    SESSION_RUNNER_REQUIRED_PACKAGES='[{"name": "az.accounts", "import_version": "2.12.1"}]'
"""

import os
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from session_runner.models import ExecutionTrust, PackageSpec


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SESSION_RUNNER_",
        env_file=".env",
        extra="ignore",
    )

    # Sessions are created under BASE_DIR/<session id>
    BASE_DIR: Path = Field(default_factory=lambda: Path(os.getcwd()))

    # Registry
    REGISTRY_HOST: str = "registry.example.org"
    REGISTRY_URL_TEMPLATE: str = "https://{host}/packages/{name}.{version}.{ext}"
    ARCHIVE_EXTENSION: str = "zip"
    FETCH_TIMEOUT: float = 120.0
    FETCH_CONCURRENCY: int = 1
    MAX_PACKAGE_SIZE_MB: int = 512

    # Provisioning
    BOOTSTRAP_PACKAGE: Optional[PackageSpec] = None
    META_PACKAGE: Optional[PackageSpec] = None
    REQUIRED_PACKAGES: List[PackageSpec] = Field(default_factory=list)

    # Interpreter
    MODULE_PATH_VARIABLE: str = "PYTHONPATH"
    DEFAULT_TRUST: ExecutionTrust = ExecutionTrust.FULL
    PYTHON_EXECUTABLE: str = sys.executable
    EXECUTION_TIMEOUT: float = 600.0
    MAX_OUTPUT_SIZE: int = 100_000
    CONSTRAINED_MODULES: List[str] = Field(default_factory=lambda: [
        'json', 'math', 're', 'datetime', 'time', 'collections', 'itertools',
        'functools', 'statistics', 'decimal', 'fractions', 'random', 'string',
        'textwrap', 'copy', 'base64', 'hashlib', 'uuid', 'typing', 'dataclasses',
        'enum', 'pathlib',
    ])

    # Service
    LOG_LEVEL: str = "INFO"
    API_KEY: str = ""
    PORT: int = 8000

    def registry_settings(self) -> dict:
        """Registry parameters handed to the session host for in-session installs."""
        return {
            'host': self.REGISTRY_HOST,
            'url_template': self.REGISTRY_URL_TEMPLATE,
            'extension': self.ARCHIVE_EXTENSION,
            'timeout': self.FETCH_TIMEOUT,
            'max_size_mb': self.MAX_PACKAGE_SIZE_MB,
        }

    def ensure_directories(self):
        self.BASE_DIR.mkdir(parents=True, exist_ok=True)


settings = Settings()
