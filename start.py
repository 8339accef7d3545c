"""Session Runner - Start Script

Reads the port from settings (SESSION_RUNNER_PORT) and starts uvicorn.
"""

import uvicorn

from session_runner.config import settings

if __name__ == "__main__":
    print(f"Starting Session Runner on port {settings.PORT}")
    print(f"  BASE_DIR: {settings.BASE_DIR}")
    print(f"  API_KEY: {'***configured***' if settings.API_KEY else 'NOT SET (dev mode)'}")

    uvicorn.run(
        "session_runner.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=True,
    )
