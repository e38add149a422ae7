from fastapi import Request
from fastapi.responses import JSONResponse
import structlog

logger = structlog.get_logger()


class AutomationEngineException(Exception):
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class AutomationNotFoundError(AutomationEngineException):
    def __init__(self, message: str = "Automation not found"):
        super().__init__(message, status_code=400)


class AutomationDisabledError(AutomationEngineException):
    def __init__(self, message: str = "This automation is disabled"):
        super().__init__(message, status_code=400)


class ExecutionConflictError(AutomationEngineException):
    def __init__(self, message: str, execution_id: str = None):
        self.execution_id = execution_id
        super().__init__(message, status_code=400)


class ExecutionNotFoundError(AutomationEngineException):
    def __init__(self, message: str = "Execution not found"):
        super().__init__(message, status_code=404)


class InvalidScheduleError(AutomationEngineException):
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AccessDeniedError(AutomationEngineException):
    def __init__(self, message: str = "Access denied"):
        super().__init__(message, status_code=403)


class StoreUnavailableError(AutomationEngineException):
    def __init__(self, message: str):
        super().__init__(message, status_code=503)


class AgentDispatchError(AutomationEngineException):
    """The execution agent could not be reached or did not produce a result."""

    def __init__(self, message: str):
        super().__init__(message, status_code=502)


class AgentTaskFailedError(AgentDispatchError):
    """The execution agent reported the task itself as failed."""


async def automation_engine_exception_handler(request: Request, exc: AutomationEngineException):
    logger.error(
        "Automation engine exception",
        error=exc.message,
        status_code=exc.status_code,
        path=request.url.path
    )
    content = {"error": exc.message}
    if isinstance(exc, ExecutionConflictError) and exc.execution_id:
        content["executionId"] = exc.execution_id
    return JSONResponse(status_code=exc.status_code, content=content)


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        path=request.url.path,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
