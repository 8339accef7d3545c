"""Session Runner

Runs scripts in isolated, ephemeral sessions whose extension modules are
provisioned from a package registry for each run.
"""

__version__ = "1.0.0"

from session_runner.models import ExecutionResult, ExecutionTrust, PackageSpec  # noqa: E402
from session_runner.runner import SessionRunner, run_script, run_script_file  # noqa: E402

__all__ = [
    "ExecutionResult",
    "ExecutionTrust",
    "PackageSpec",
    "SessionRunner",
    "run_script",
    "run_script_file",
]
