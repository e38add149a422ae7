"""Recurrence engine: one new scheduled row per cron occurrence."""
import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import IntegrityError
from automation_engine.config.logging import get_logger
from automation_engine.database.repositories import FlowExecutionRepository
from automation_engine.models.flow_execution import (
    ExecutionStatus,
    FlowExecution,
    new_execution_thread_id,
)

logger = get_logger("scheduler")

# Crontab numbers weekdays from Sunday (0 and 7), APScheduler from Monday
CRONTAB_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def crontab_day_of_week(field: str) -> str:
    """Rewrite numeric crontab weekdays as names so APScheduler reads them the crontab way."""
    parts = []
    for part in field.split(","):
        match = re.fullmatch(r"0-([0-7])", part)
        if match:
            end = int(match.group(1))
            if end >= 6:
                parts.append("*")
            elif end == 0:
                parts.append("sun")
            else:
                parts.append(f"sun,mon-{CRONTAB_WEEKDAYS[end]}")
            continue
        parts.append(re.sub(r"(?<![/\d])([0-7])(?!\d)", lambda m: CRONTAB_WEEKDAYS[int(m.group(1))], part))
    return ",".join(parts)


def build_cron_trigger(cron_expression: str, tz: str = "UTC") -> CronTrigger:
    """Parse a 5-field (minute hour day month weekday) or 6-field (leading seconds) expression."""
    parts = cron_expression.split()

    if len(parts) == 6:
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=crontab_day_of_week(parts[5]),
            timezone=tz
        )
    if len(parts) == 5:
        return CronTrigger(
            second='0',
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=crontab_day_of_week(parts[4]),
            timezone=tz
        )
    raise ValueError(f"Cron expression must have 5 or 6 fields, got {len(parts)}: '{cron_expression}'")


def next_fire_time(cron_expression: str, now: datetime) -> datetime:
    """Next fire time strictly after ``now``, as a naive UTC datetime.

    Raises ValueError when the expression cannot be parsed or never fires.
    """
    trigger = build_cron_trigger(cron_expression)
    aware_now = now.replace(tzinfo=timezone.utc)
    fire_time = trigger.get_next_fire_time(None, aware_now)
    if fire_time is not None and fire_time <= aware_now:
        fire_time = trigger.get_next_fire_time(None, aware_now + timedelta(seconds=1))
    if fire_time is None:
        raise ValueError(f"Cron expression '{cron_expression}' has no future fire time")
    return fire_time.astimezone(timezone.utc).replace(tzinfo=None)


class RecurrenceEngine:
    def __init__(self, repository: FlowExecutionRepository, fallback_minutes: int = 60):
        self.repository = repository
        self.fallback_minutes = fallback_minutes

    def compute_next_run(self, cron_expression: str, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.utcnow()
        try:
            return next_fire_time(cron_expression, now)
        except ValueError as e:
            fallback = now + timedelta(minutes=self.fallback_minutes)
            logger.error("Cron parsing failed, using fixed fallback offset",
                         cron_expression=cron_expression,
                         error=str(e),
                         fallback_minutes=self.fallback_minutes,
                         next_run=fallback.isoformat(),
                         degraded=True)
            return fallback

    async def schedule_next(self, execution: FlowExecution, now: Optional[datetime] = None) -> Optional[FlowExecution]:
        """Insert the next occurrence of a terminated recurring execution.

        The terminated row is left untouched. Returns the new row, or None when
        nothing was scheduled.
        """
        if not execution.is_recurring or not execution.is_terminal:
            return None

        existing = await self.repository.get_successor(execution.id)
        if existing is not None:
            logger.info("Next occurrence already exists",
                        execution_id=execution.id, next_execution_id=existing.id)
            return None

        blocking = await self.repository.get_non_terminal_for_automation(
            execution.automation_id, exclude_id=execution.id
        )
        if blocking is not None:
            logger.warning("Automation already has a live execution, not scheduling next occurrence",
                           execution_id=execution.id,
                           automation_id=execution.automation_id,
                           blocking_execution_id=blocking.id,
                           blocking_status=blocking.status)
            return None

        next_run = self.compute_next_run(execution.cron_expression, now)

        if execution.has_end_time and execution.end_time and next_run > execution.end_time:
            logger.info("Recurring schedule reached its end time",
                        execution_id=execution.id,
                        end_time=execution.end_time.isoformat(),
                        next_run=next_run.isoformat())
            return None

        try:
            new_execution = await self.repository.create(
                thread_id=execution.thread_id,
                automation_id=execution.automation_id,
                user_id=execution.user_id,
                status=ExecutionStatus.SCHEDULED,
                steps=list(execution.steps or []),
                project_context=execution.project_context,
                current_step=0,
                total_steps=len(execution.steps or []),
                results=[],
                is_scheduled=True,
                cron_expression=execution.cron_expression,
                next_scheduled_run=next_run,
                has_end_time=execution.has_end_time,
                end_time=execution.end_time,
                execution_thread_id=new_execution_thread_id(),
                previous_execution_id=execution.id,
            )
        except IntegrityError:
            # Another actor created the successor first
            await self.repository.session.rollback()
            logger.info("Next occurrence created concurrently", execution_id=execution.id)
            return None

        logger.info("Created next occurrence",
                    execution_id=execution.id,
                    next_execution_id=new_execution.id,
                    next_run=next_run.isoformat())
        return new_execution
