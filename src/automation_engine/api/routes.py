from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from automation_engine.api.schemas import (
    AutomationEnabledRequest,
    AutomationRequest,
    AutomationResponse,
    CleanupResponse,
    ExecuteRequest,
    ExecuteResponse,
    ExecutionStatusResponse,
    HealthResponse,
    ScheduleActionResponse,
    ScheduleListResponse,
    ScheduleRequest,
    ScheduleResponse,
    StopRequest,
    StopResponse,
    TriggerResponse,
)
from automation_engine.config.logging import get_logger
from automation_engine.database.connection import get_db
from automation_engine.services.automation_service import AutomationService

logger = get_logger("automation_api")

# Security setup
security = HTTPBearer(auto_error=False)


async def get_api_key(request: Request, credentials: HTTPAuthorizationCredentials = Security(security)):
    """Validate API key for protected endpoints."""
    api_key = request.app.state.settings.api_key
    if not api_key:
        # No API key configured, routes are open
        return True

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def get_automation_service(request: Request, db: AsyncSession = Depends(get_db)) -> AutomationService:
    return AutomationService(db, request.app.state.settings, request.app.state.job_queue)


def create_router() -> APIRouter:
    router = APIRouter()

    @router.post("/trigger", response_model=TriggerResponse)
    async def trigger(request: Request, _: bool = Depends(get_api_key)):
        """Run one scheduler tick. Responds 503 when the execution store is unreachable."""
        summary = await request.app.state.scheduler.tick()
        return TriggerResponse(
            message=f"Processed {summary.processed} executions across {summary.automations} automations",
            **summary.as_dict()
        )

    @router.post("/executions", response_model=ExecuteResponse)
    async def execute_automation(
        body: ExecuteRequest,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        execution = await service.execute_now(
            thread_id=body.thread_id,
            automation_id=body.automation_id,
            user_id=body.user_id,
            steps=[step.model_dump() for step in body.steps],
            project_context=body.project_context,
        )
        return ExecuteResponse(
            execution_id=execution.id,
            status=execution.status,
            message="Execution queued and will start on the next scheduler run",
        )

    @router.post("/schedules", response_model=ScheduleResponse)
    async def schedule_automation(
        body: ScheduleRequest,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        execution = await service.schedule(
            thread_id=body.thread_id,
            automation_id=body.automation_id,
            user_id=body.user_id,
            steps=[step.model_dump() for step in body.steps],
            project_context=body.project_context,
            cron_expression=body.cron_expression,
            scheduled_for=body.scheduled_for,
            has_end_time=body.has_end_time,
            end_time=body.end_time,
        )
        return ScheduleResponse(
            execution_id=execution.id,
            status=execution.status,
            scheduled_for=execution.scheduled_for,
            next_scheduled_run=execution.next_scheduled_run,
            is_recurring=execution.is_recurring,
        )

    @router.get("/executions/{execution_id}", response_model=ExecutionStatusResponse)
    async def get_execution_status(
        execution_id: str,
        service: AutomationService = Depends(get_automation_service),
    ):
        execution = await service.get_execution(execution_id)
        return ExecutionStatusResponse.model_validate(execution)

    @router.post("/executions/{execution_id}/stop", response_model=StopResponse)
    async def force_stop_execution(
        execution_id: str,
        body: Optional[StopRequest] = None,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        previous = await service.get_execution(execution_id)
        previous_status = previous.status
        execution = await service.force_stop(execution_id, user_id=body.user_id if body else None)
        return StopResponse(
            message="Execution force stopped successfully",
            execution_id=execution.id,
            previous_status=previous_status,
            status=execution.status,
            stopped_at=execution.completed_at or datetime.utcnow(),
        )

    @router.post("/schedules/{execution_id}/pause", response_model=ScheduleActionResponse)
    async def pause_schedule(
        execution_id: str,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        execution = await service.pause_schedule(execution_id)
        return ScheduleActionResponse(message="Schedule paused successfully",
                                      execution_id=execution.id, status=execution.status)

    @router.post("/schedules/{execution_id}/resume", response_model=ScheduleActionResponse)
    async def resume_schedule(
        execution_id: str,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        execution = await service.resume_schedule(execution_id)
        return ScheduleActionResponse(message="Schedule resumed successfully",
                                      execution_id=execution.id, status=execution.status)

    @router.post("/schedules/{execution_id}/delete", response_model=ScheduleActionResponse)
    async def delete_schedule(
        execution_id: str,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        execution = await service.delete_schedule(execution_id)
        return ScheduleActionResponse(message="Schedule deleted successfully",
                                      execution_id=execution.id, status=execution.status)

    @router.get("/users/{user_id}/schedules", response_model=ScheduleListResponse)
    async def list_schedules(
        user_id: str,
        service: AutomationService = Depends(get_automation_service),
    ):
        executions = await service.list_schedules(user_id)
        return ScheduleListResponse(
            executions=[ExecutionStatusResponse.model_validate(e) for e in executions]
        )

    @router.post("/automations", response_model=AutomationResponse)
    async def register_automation(
        body: AutomationRequest,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        automation = await service.register_automation(
            automation_id=body.automation_id,
            thread_id=body.thread_id,
            user_id=body.user_id,
            name=body.name,
            enabled=body.enabled,
        )
        return AutomationResponse.model_validate(automation)

    @router.post("/automations/{automation_id}/enabled", response_model=AutomationResponse)
    async def set_automation_enabled(
        automation_id: str,
        body: AutomationEnabledRequest,
        service: AutomationService = Depends(get_automation_service),
        _: bool = Depends(get_api_key),
    ):
        automation = await service.set_automation_enabled(automation_id, body.enabled)
        return AutomationResponse.model_validate(automation)

    @router.post("/admin/cleanup", response_model=CleanupResponse)
    async def run_cleanup(request: Request, _: bool = Depends(get_api_key)):
        summary = await request.app.state.scheduler.cleanup.run()
        return CleanupResponse(stale_running=summary.stale_running, stale_scheduled=summary.stale_scheduled)

    @router.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        health_status = {
            "status": "healthy",
            "service": "Automation Engine",
            "version": "0.1.0",
        }

        try:
            await request.app.state.database.ping()
            health_status["database"] = {"is_healthy": True}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["database"] = {"is_healthy": False, "error": str(e)}

        job_queue = request.app.state.job_queue
        if job_queue is not None:
            try:
                health_status["job_queue"] = {"is_healthy": True, "name": job_queue.name,
                                              "size": await job_queue.size()}
            except Exception as e:
                health_status["status"] = "degraded"
                health_status["job_queue"] = {"is_healthy": False, "error": str(e)}

        return health_status

    return router
