"""Job queue interface for the queue-driven worker path."""
import abc
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from automation_engine.models.flow_execution import FlowExecution


class AutomationJob(BaseModel):
    """One unit of work for the worker: advance a single execution."""

    model_config = ConfigDict(populate_by_name=True)

    execution_id: str = Field(alias="executionId")
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    automation_id: Optional[str] = Field(default=None, alias="automationId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    project_context: Optional[str] = Field(default=None, alias="projectContext")
    is_recurring: bool = Field(default=False, alias="isRecurring")

    @classmethod
    def for_execution(cls, execution: FlowExecution) -> "AutomationJob":
        return cls(
            execution_id=execution.id,
            thread_id=execution.thread_id,
            automation_id=execution.automation_id,
            user_id=execution.user_id,
            steps=list(execution.steps or []),
            project_context=execution.project_context,
            is_recurring=execution.is_recurring,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "AutomationJob":
        return cls.model_validate_json(data)


class JobQueue(metaclass=abc.ABCMeta):
    """FIFO of automation jobs shared by enqueuers and workers."""

    def __init__(self, name: str):
        self.name = name

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def enqueue(self, job: AutomationJob) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def dequeue(self, timeout: float = 1.0) -> Optional[AutomationJob]:
        """Next job, or None if none arrived within ``timeout`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def size(self) -> int:
        raise NotImplementedError
