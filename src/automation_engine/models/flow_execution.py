import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    STOPPED = "stopped"


TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)

NON_TERMINAL_STATUSES = tuple(s for s in ExecutionStatus if s not in TERMINAL_STATUSES)

# Statuses the scheduler tick considers for readiness
ACTIVE_STATUSES = (
    ExecutionStatus.PENDING,
    ExecutionStatus.RUNNING,
    ExecutionStatus.SCHEDULED,
)


class StepResultStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def new_execution_id() -> str:
    return str(uuid.uuid4())


def new_execution_thread_id() -> str:
    return f"exec-{uuid.uuid4().hex}"


class FlowExecution(Base):
    __tablename__ = "flow_executions"

    id = Column(String(36), primary_key=True, default=new_execution_id)
    automation_id = Column(String(100), nullable=False, index=True)
    thread_id = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    execution_thread_id = Column(String(100), nullable=False, default=new_execution_thread_id)

    status = Column(String(20), nullable=False, default=ExecutionStatus.PENDING.value, index=True)

    steps = Column(JSON, nullable=False, default=list)
    results = Column(JSON, nullable=False, default=list)
    current_step = Column(Integer, nullable=False, default=0)
    total_steps = Column(Integer, nullable=False, default=0)
    project_context = Column(Text)
    error_message = Column(Text)

    is_scheduled = Column(Boolean, nullable=False, default=False)
    cron_expression = Column(String(100))
    scheduled_for = Column(DateTime)
    next_scheduled_run = Column(DateTime)
    has_end_time = Column(Boolean, nullable=False, default=False)
    end_time = Column(DateTime)
    previous_execution_id = Column(String(36), unique=True)

    # Bumped by every conditional write
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    @property
    def is_recurring(self) -> bool:
        return bool(self.cron_expression) and bool(self.is_scheduled)

    @property
    def fire_time(self):
        """One-time runs fire at scheduled_for, recurring runs at next_scheduled_run."""
        return self.scheduled_for or self.next_scheduled_run

    def __repr__(self):
        return (f"<FlowExecution(id='{self.id}', automation_id='{self.automation_id}', "
                f"status='{self.status}', current_step={self.current_step})>")
