"""Session Runner - Data Models

Shapes shared by the runner, the session host and the HTTP routes:
- PackageSpec (what to provision)
- ExecutionTrust (how much the session host lets scripts do)
- ChannelRecord (one message streamed back by the session host)
- ExecutionResult (what every run returns)
"""

import enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# ============================================================
# Enums
# ============================================================

class ExecutionTrust(str, enum.Enum):
    RESTRICTED = "restricted"    # No caller scripts at all
    CONSTRAINED = "constrained"  # Reduced builtins, guarded imports
    FULL = "full"                # Unrestricted

    @property
    def rank(self) -> int:
        return list(ExecutionTrust).index(self)


class Channel(str, enum.Enum):
    OUTPUT = "output"
    ERROR = "error"
    WARNING = "warning"
    VERBOSE = "verbose"
    DEBUG = "debug"
    PROGRESS = "progress"
    INFORMATION = "information"


# ============================================================
# Packages
# ============================================================

class PackageSpec(BaseModel):
    """A module to provision from the registry"""
    name: str
    import_version: str
    full_version: Optional[str] = None

    @model_validator(mode='after')
    def _default_full_version(self):
        if not self.full_version:
            self.full_version = self.import_version
        return self


# ============================================================
# Session host records and results
# ============================================================

class ChannelRecord(BaseModel):
    channel: Channel
    text: str


class ExecutionResult(BaseModel):
    """Unified response of one session run"""
    outputs: List[str] = Field(default_factory=list)
    error_messages: List[str] = Field(default_factory=list)
    failed: bool = False
    streams: Dict[str, List[str]] = Field(default_factory=dict)
    session_id: Optional[str] = None
    duration_ms: int = 0


# ============================================================
# HTTP request bodies
# ============================================================

class RunScriptRequest(BaseModel):
    script: str = Field(..., description="Python source to run in a fresh session")
    environment: Optional[Dict[str, str]] = Field(default=None, description="Extra environment entries")


class RunScriptFileRequest(BaseModel):
    path: str = Field(..., description="Path of a script file readable by the service")
    environment: Optional[Dict[str, str]] = Field(default=None, description="Extra environment entries")
