from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class StepDefinition(CamelModel):
    content: str = Field(min_length=1)


class ExecuteRequest(CamelModel):
    thread_id: str
    automation_id: str
    user_id: str
    steps: List[StepDefinition] = Field(min_length=1)
    project_context: Optional[str] = None


class ScheduleRequest(ExecuteRequest):
    cron_expression: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    has_end_time: bool = False
    end_time: Optional[datetime] = None


class ExecuteResponse(CamelModel):
    success: bool = True
    execution_id: str
    status: str
    message: str


class ScheduleResponse(CamelModel):
    success: bool = True
    execution_id: str
    status: str
    scheduled_for: Optional[datetime] = None
    next_scheduled_run: Optional[datetime] = None
    is_recurring: bool


class StepResult(CamelModel):
    step_number: int
    content: Optional[str] = None
    response: Optional[str] = None
    status: str
    timestamp: Optional[str] = None
    error: Optional[str] = None


class ExecutionStatusResponse(CamelModel):
    id: str
    automation_id: str
    thread_id: str
    user_id: str
    execution_thread_id: Optional[str] = None
    status: str
    current_step: int
    total_steps: int
    results: List[StepResult] = []
    error_message: Optional[str] = None
    is_scheduled: bool
    cron_expression: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    next_scheduled_run: Optional[datetime] = None
    has_end_time: bool = False
    end_time: Optional[datetime] = None
    previous_execution_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class StopRequest(CamelModel):
    user_id: Optional[str] = None


class StopResponse(CamelModel):
    success: bool = True
    message: str
    execution_id: str
    previous_status: str
    status: str
    stopped_at: datetime


class ScheduleActionResponse(CamelModel):
    success: bool = True
    message: str
    execution_id: str
    status: str


class ScheduleListResponse(CamelModel):
    executions: List[ExecutionStatusResponse]


class AutomationRequest(CamelModel):
    automation_id: str
    thread_id: str
    user_id: str
    name: Optional[str] = None
    enabled: bool = True


class AutomationEnabledRequest(CamelModel):
    enabled: bool


class AutomationResponse(CamelModel):
    id: str
    thread_id: str
    user_id: str
    name: Optional[str] = None
    enabled: bool


class TriggerResponse(CamelModel):
    message: str
    processed: int
    automations: int
    stale_running: int
    stale_scheduled: int
    outcomes: Dict[str, int] = {}


class CleanupResponse(CamelModel):
    stale_running: int
    stale_scheduled: int


class HealthResponse(CamelModel):
    status: str
    service: str
    version: str
    database: Dict[str, Any]
    job_queue: Optional[Dict[str, Any]] = None
