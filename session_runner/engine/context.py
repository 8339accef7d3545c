"""Session Runner - Session Context

The isolation boundary of one run:
- a fresh, never reused id
- a working directory named by that id under the base directory
- an environment overlay that points the module search path at the
  working directory
- an explicit execution trust level

session_scope() owns the working directory: it creates it on entry and
removes it on every exit path (normal return, fatal error, cancellation).
"""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from session_runner.config import settings
from session_runner.engine.reaper import reaper as default_reaper
from session_runner.errors import ProvisionError
from session_runner.models import ExecutionTrust

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    id: str
    working_dir: Path
    env_overlay: Dict[str, str]
    execution_trust: ExecutionTrust
    location: Optional[Path] = None
    cleanup_error: Optional[Exception] = field(default=None, repr=False)

    def __post_init__(self):
        if self.location is None:
            self.location = self.working_dir


def build_session_context(
    environment: Optional[Dict[str, str]] = None,
    trust: Optional[ExecutionTrust] = None,
    base_dir: Optional[Path] = None,
) -> SessionContext:
    """Allocate a new session id and compose its directory and overlay.

    The module-search-path entry always wins over a caller-supplied value
    of the same name.
    """
    session_id = uuid.uuid4().hex
    base = Path(base_dir or settings.BASE_DIR).resolve()
    working_dir = base / session_id

    overlay = dict(environment or {})
    overlay[settings.MODULE_PATH_VARIABLE] = str(working_dir)

    return SessionContext(
        id=session_id,
        working_dir=working_dir,
        env_overlay=overlay,
        execution_trust=trust or settings.DEFAULT_TRUST,
    )


@asynccontextmanager
async def session_scope(context: SessionContext, reaper=None):
    """Create the working directory and guarantee its removal.

    Raises:
        ProvisionError: the directory already exists or cannot be created
        OSError: the base directory itself cannot be created
    """
    reaper = reaper or default_reaper
    context.working_dir.parent.mkdir(parents=True, exist_ok=True)
    try:
        context.working_dir.mkdir()
    except FileExistsError:
        raise ProvisionError(f"Session directory already exists: {context.working_dir}")
    except OSError as e:
        raise ProvisionError(f"Cannot create session directory {context.working_dir}: {e}")

    logger.info(f"Session {context.id} started in {context.working_dir}")
    try:
        yield context
    finally:
        # No await from here on: teardown completes even when the task is cancelled
        context.cleanup_error = reaper.reap(context)
