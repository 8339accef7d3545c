"""Session Runner - Execution Routes

POST /run/script  run script text in a fresh session
POST /run/file    run a script file (readable by the service) in a fresh session

Both always answer 200 with an ExecutionResult; check `failed`.
"""

import logging

from fastapi import APIRouter

from session_runner.models import ExecutionResult, RunScriptFileRequest, RunScriptRequest
from session_runner import runner as runner_module

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/run/script", response_model=ExecutionResult)
async def run_script(request: RunScriptRequest):
    logger.info(f"run_script: {len(request.script)} chars, env keys={sorted(request.environment or {})}")
    return await runner_module.runner.run_script(request.script, request.environment)


@router.post("/run/file", response_model=ExecutionResult)
async def run_script_file(request: RunScriptFileRequest):
    logger.info(f"run_script_file: path={request.path}")
    return await runner_module.runner.run_script_file(request.path, request.environment)
