from typing import Optional
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load environment variables from .env file
# Try multiple paths to find .env file
import pathlib
project_root = pathlib.Path(__file__).parent.parent.parent.parent
env_paths = [
    project_root / ".env",
    pathlib.Path.cwd() / ".env",
    pathlib.Path(".env")
]

for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=[str(p) for p in env_paths if p.exists()],
        case_sensitive=False,
        extra="ignore",  # Allow extra environment variables
    )

    database_url: str = Field(default="sqlite+aiosqlite:///./automation_engine.db")

    # Execution agent webhook
    agent_webhook_url: str = Field(default="http://localhost:5678/webhook/agent")
    agent_user_agent: str = Field(default="Automation-Engine/1.0")
    agent_max_attempts: int = Field(default=3, ge=1)
    agent_request_timeout_seconds: float = Field(default=30.0)
    agent_poll_interval_seconds: float = Field(default=5.0)
    agent_poll_request_timeout_seconds: float = Field(default=10.0)
    agent_max_poll_seconds: float = Field(default=720.0)
    agent_sync_timeout_seconds: float = Field(default=600.0)
    agent_retry_base_delay_seconds: float = Field(default=2.0)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)

    # Scheduler tick
    enable_scheduler: bool = Field(default=True)
    tick_interval_seconds: int = Field(default=60)
    running_timeout_minutes: int = Field(default=15)
    scheduled_timeout_minutes: int = Field(default=60)
    execution_timeout_minutes: int = Field(default=20)
    max_concurrent_dispatches: int = Field(default=10, ge=1)
    recurrence_fallback_minutes: int = Field(default=60)

    # Queue-driven worker path
    dispatch_mode: str = Field(default="tick")  # "tick" or "queue"
    enable_worker: bool = Field(default=False)
    job_queue_backend: str = Field(default="memory")  # "memory" or "redis"
    job_queue_name: str = Field(default="automation-scheduler")
    redis_url: str = Field(default="redis://localhost:6379/0")
    worker_concurrency: int = Field(default=5, ge=1)

    # API Security
    api_key: Optional[str] = Field(default=None)

    @property
    def uses_job_queue(self) -> bool:
        return self.dispatch_mode.lower() == "queue"

    @model_validator(mode="after")
    def validate_job_queue_consumer(self) -> "Settings":
        # An in-process queue is only drained by a worker in this same process
        if self.uses_job_queue and self.job_queue_backend.lower() == "memory" and not self.enable_worker:
            raise ValueError(
                "DISPATCH_MODE=queue with JOB_QUEUE_BACKEND=memory requires ENABLE_WORKER=true"
            )
        return self


settings = Settings()
