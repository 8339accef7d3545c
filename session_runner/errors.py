"""Session Runner - Error Taxonomy

Two kinds of failure flow through a session:

- FatalError subclasses are raised. They abort provisioning or invocation
  and become a single failed ExecutionResult.
- CollectedError records are never raised. They are error-channel entries
  produced inside the session host and are appended to the result while
  the remaining fragments keep running.

CleanupError belongs to teardown only and never reaches the result.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class SessionError(Exception):
    """Base class for session lifecycle errors"""


class FatalError(SessionError):
    """Aborts the session before or during invocation"""


class ProvisionError(FatalError):
    """Session directory or extraction target cannot be created"""


class ExtractionError(ProvisionError):
    """Archive is unreadable, corrupt, or its target already exists"""


class NetworkError(FatalError):
    """Registry fetch failed"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(f"Network error: {message}")
        self.url = url


class InvocationError(FatalError):
    """Session host could not start, crashed, or timed out"""


class CleanupError(SessionError):
    """Working directory could not be removed at teardown"""

    def __init__(self, path: Path, cause: BaseException):
        super().__init__(f"Failed to remove session directory {path}: {cause}")
        self.path = path
        self.cause = cause


@dataclass(frozen=True)
class CollectedError:
    """An interpreter-level failure recorded on the error channel"""
    message: str

    def __str__(self) -> str:
        return self.message
