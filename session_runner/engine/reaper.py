"""Session Runner - Session Reaper

Removes a session's working directory. Failures are logged and handed
back to the caller for inspection; they are never raised.
"""

import logging
import shutil
from typing import Optional

from session_runner.errors import CleanupError

logger = logging.getLogger(__name__)


class SessionReaper:
    """Tears down session working directories"""

    def reap(self, context) -> Optional[CleanupError]:
        path = context.working_dir
        if not path.exists():
            logger.debug(f"Session {context.id}: nothing to remove at {path}")
            return None
        try:
            shutil.rmtree(path)
        except OSError as e:
            error = CleanupError(path, e)
            logger.warning(f"Session {context.id}: {error}")
            return error
        logger.info(f"Session {context.id}: removed {path}")
        return None


reaper = SessionReaper()
