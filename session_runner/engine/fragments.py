"""Session Runner - Script Fragments

A fragment is one unit of work queued for the session host. Arguments are
typed fields serialised as JSON, never spliced into script source, so a
path or module name can never change the meaning of the code around it.
"""

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from session_runner.models import ExecutionTrust


class ElevateTrust(BaseModel):
    """Raise the host's trust level for the rest of the invocation (idempotent)"""
    kind: Literal['elevate_trust'] = 'elevate_trust'
    level: ExecutionTrust


class ImportModule(BaseModel):
    """Load an extracted module from its directory, pinned to a version"""
    kind: Literal['import_module'] = 'import_module'
    name: str
    path: str
    version: str


class EnsurePackage(BaseModel):
    """Install a package into the session directory unless it is already there"""
    kind: Literal['ensure_package'] = 'ensure_package'
    name: str
    import_version: str
    full_version: str


class SetLocation(BaseModel):
    """Set the directory relative paths in later script fragments resolve against"""
    kind: Literal['set_location'] = 'set_location'
    directory: str


class Script(BaseModel):
    kind: Literal['script'] = 'script'
    text: str
    origin: str = '<script>'


Fragment = Annotated[
    Union[ElevateTrust, ImportModule, EnsurePackage, SetLocation, Script],
    Field(discriminator='kind'),
]


class InvocationPayload(BaseModel):
    """Everything the session host needs, sent once on its stdin"""
    session_id: str
    working_dir: str
    location: str
    environment: Dict[str, str] = Field(default_factory=dict)
    max_output_size: int
    constrained_modules: List[str] = Field(default_factory=list)
    registry: Optional[dict] = None
    fragments: List[Fragment] = Field(default_factory=list)
