from datetime import datetime
from typing import Any, Iterable, List, Optional, Union
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from automation_engine.models.automation import Automation
from automation_engine.models.flow_execution import (
    ACTIVE_STATUSES,
    NON_TERMINAL_STATUSES,
    ExecutionStatus,
    FlowExecution,
)

StatusArg = Union[ExecutionStatus, str, Iterable[Union[ExecutionStatus, str]]]


def _status_values(statuses: StatusArg) -> List[str]:
    if isinstance(statuses, (ExecutionStatus, str)):
        statuses = [statuses]
    return [s.value if isinstance(s, ExecutionStatus) else s for s in statuses]


class FlowExecutionRepository:
    """Flow execution rows are the queue, the state store and the audit log.

    Every mutation goes through ``conditional_update``: a single-row UPDATE
    scoped by id plus the status (and optionally version) the caller last saw.
    A zero rowcount means another actor changed the row first.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> FlowExecution:
        if "status" in fields and isinstance(fields["status"], ExecutionStatus):
            fields["status"] = fields["status"].value
        steps = fields.get("steps") or []
        fields.setdefault("total_steps", len(steps))
        execution = FlowExecution(**fields)
        self.session.add(execution)
        await self.session.commit()
        await self.session.refresh(execution)
        return execution

    async def get_by_id(self, execution_id: str) -> Optional[FlowExecution]:
        result = await self.session.execute(
            select(FlowExecution)
            .where(FlowExecution.id == execution_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def conditional_update(
        self,
        execution_id: str,
        expected_status: StatusArg,
        expected_version: Optional[int] = None,
        **values: Any
    ) -> bool:
        if isinstance(values.get("status"), ExecutionStatus):
            values["status"] = values["status"].value

        conditions = [
            FlowExecution.id == execution_id,
            FlowExecution.status.in_(_status_values(expected_status)),
        ]
        if expected_version is not None:
            conditions.append(FlowExecution.version == expected_version)

        result = await self.session.execute(
            update(FlowExecution)
            .where(and_(*conditions))
            .values(version=FlowExecution.version + 1, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def release(self) -> None:
        """End the current read transaction and hand the connection back to the pool.

        Loaded rows stay usable since the session does not expire on commit.
        """
        await self.session.commit()

    async def get_active_executions(self) -> List[FlowExecution]:
        result = await self.session.execute(
            select(FlowExecution)
            .where(FlowExecution.status.in_(_status_values(ACTIVE_STATUSES)))
            .order_by(FlowExecution.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_stale_running(self, created_before: datetime) -> List[FlowExecution]:
        """Running rows whose *row* is older than ``created_before``.

        Age counts from ``created_at``, not ``started_at``: a scheduled row
        that fires more than the timeout after it was created is swept on
        the first tick after its first step. The per-step execution timeout
        in the dispatcher is the one measured from ``started_at``.
        """
        result = await self.session.execute(
            select(FlowExecution).where(
                FlowExecution.status == ExecutionStatus.RUNNING.value,
                FlowExecution.created_at < created_before,
            )
        )
        return list(result.scalars().all())

    async def get_stale_scheduled(self, cutoff: datetime) -> List[FlowExecution]:
        """Scheduled rows created before ``cutoff`` whose fire time is missing or also before it."""
        fire_time = func.coalesce(FlowExecution.scheduled_for, FlowExecution.next_scheduled_run)
        result = await self.session.execute(
            select(FlowExecution).where(
                FlowExecution.status == ExecutionStatus.SCHEDULED.value,
                FlowExecution.created_at < cutoff,
                or_(fire_time.is_(None), fire_time < cutoff),
            )
        )
        return list(result.scalars().all())

    async def get_non_terminal_for_automation(
        self, automation_id: str, exclude_id: Optional[str] = None
    ) -> Optional[FlowExecution]:
        query = (
            select(FlowExecution)
            .where(
                FlowExecution.automation_id == automation_id,
                FlowExecution.status.in_(_status_values(NON_TERMINAL_STATUSES)),
            )
            .order_by(FlowExecution.created_at.desc())
            .limit(1)
        )
        if exclude_id is not None:
            query = query.where(FlowExecution.id != exclude_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_successor(self, execution_id: str) -> Optional[FlowExecution]:
        result = await self.session.execute(
            select(FlowExecution).where(FlowExecution.previous_execution_id == execution_id)
        )
        return result.scalar_one_or_none()

    async def get_scheduled_for_user(self, user_id: str) -> List[FlowExecution]:
        result = await self.session.execute(
            select(FlowExecution)
            .where(FlowExecution.user_id == user_id, FlowExecution.is_scheduled.is_(True))
            .order_by(FlowExecution.created_at.desc())
        )
        return list(result.scalars().all())


class AutomationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, automation_id: str) -> Optional[Automation]:
        result = await self.session.execute(
            select(Automation)
            .where(Automation.id == automation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def is_enabled(self, automation_id: str) -> bool:
        automation = await self.get_by_id(automation_id)
        return automation is not None and bool(automation.enabled)

    async def upsert(
        self,
        automation_id: str,
        thread_id: str,
        user_id: str,
        name: Optional[str] = None,
        enabled: bool = True
    ) -> Automation:
        existing = await self.get_by_id(automation_id)
        if existing:
            await self.session.execute(
                update(Automation)
                .where(Automation.id == automation_id)
                .values(
                    thread_id=thread_id,
                    user_id=user_id,
                    name=name or existing.name,
                    enabled=enabled
                )
            )
            await self.session.commit()
            return await self.get_by_id(automation_id)

        automation = Automation(
            id=automation_id,
            thread_id=thread_id,
            user_id=user_id,
            name=name,
            enabled=enabled
        )
        self.session.add(automation)
        await self.session.commit()
        await self.session.refresh(automation)
        return automation

    async def set_enabled(self, automation_id: str, enabled: bool) -> bool:
        result = await self.session.execute(
            update(Automation)
            .where(Automation.id == automation_id)
            .values(enabled=enabled)
        )
        await self.session.commit()
        return result.rowcount > 0
