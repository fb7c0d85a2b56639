"""Persistence helpers for study plans and their daily tasks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.services.errors import InvalidArgumentError, StudyPlanNotFoundError, StudyPlanTaskNotFoundError

from . import STUDY_PLAN_STATUSES, StudyPlan, StudyPlanTask


MAX_PLAN_DAYS = 30


async def create_study_plan(
    session: AsyncSession,
    user_id: int,
    *,
    title: str,
    description: str,
    goals: Sequence[str],
    tasks: Sequence[Tuple[int, str]],
    duration_days: int,
    start: Optional[datetime] = None,
) -> StudyPlan:
    """Store a plan with one task per ``(day, title)`` pair, due ``day`` days after ``start``."""
    if not 1 <= duration_days <= MAX_PLAN_DAYS:
        raise InvalidArgumentError(f"A plan must last between 1 and {MAX_PLAN_DAYS} days.")
    if not tasks:
        raise InvalidArgumentError("A plan needs at least one task.")
    if start is None:
        start = datetime.now(timezone.utc)

    plan = StudyPlan(
        user_id=user_id,
        title=(title.strip() or "Study plan")[:255],
        description=description.strip(),
        goals=[goal.strip() for goal in goals if goal.strip()],
        start_date=start,
        end_date=start + timedelta(days=duration_days),
        status="active",
        progress=0,
        created_at=start,
        updated_at=start,
        tasks=[
            StudyPlanTask(day=day, title=task_title, due_date=start + timedelta(days=day), completed=False)
            for day, task_title in sorted(tasks, key=lambda item: item[0])
        ],
    )
    session.add(plan)
    await session.flush()
    return plan


async def get_study_plan(
    session: AsyncSession,
    plan_id: int,
    user_id: Optional[int] = None,
) -> StudyPlan:
    """Load a plan with its tasks, optionally requiring that ``user_id`` owns it."""
    stmt = select(StudyPlan).options(selectinload(StudyPlan.tasks)).where(StudyPlan.id == plan_id)
    plan = (await session.execute(stmt)).scalar_one_or_none()
    if plan is None or (user_id is not None and plan.user_id != user_id):
        raise StudyPlanNotFoundError(plan_id)
    return plan


async def list_user_study_plans(
    session: AsyncSession,
    user_id: int,
    status: Optional[str] = None,
    limit: int = 25,
) -> Sequence[StudyPlan]:
    """Return a learner's plans, newest first, optionally with one status."""
    stmt = select(StudyPlan).options(selectinload(StudyPlan.tasks)).where(StudyPlan.user_id == user_id)
    if status is not None:
        stmt = stmt.where(StudyPlan.status == status)
    stmt = stmt.order_by(StudyPlan.created_at.desc(), StudyPlan.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


def _refresh_progress(plan: StudyPlan) -> None:
    total = len(plan.tasks)
    done = sum(1 for task in plan.tasks if task.completed)
    plan.progress = done * 100 // total if total else 0
    if total and done == total:
        plan.status = "completed"
    elif plan.status == "completed":
        plan.status = "active"


async def set_task_completed(
    session: AsyncSession,
    task_id: int,
    user_id: int,
    completed: bool = True,
    now: Optional[datetime] = None,
) -> StudyPlan:
    """Mark one task done (or not) and return its plan with refreshed progress."""
    task = await session.get(StudyPlanTask, task_id)
    if task is None:
        raise StudyPlanTaskNotFoundError(task_id)
    try:
        plan = await get_study_plan(session, task.plan_id, user_id)
    except StudyPlanNotFoundError:
        raise StudyPlanTaskNotFoundError(task_id) from None

    task.completed = completed
    _refresh_progress(plan)
    plan.updated_at = now or datetime.now(timezone.utc)
    await session.flush()
    return plan


async def set_study_plan_status(
    session: AsyncSession,
    plan_id: int,
    user_id: int,
    status: str,
    now: Optional[datetime] = None,
) -> StudyPlan:
    """Pause or resume a plan; a plan with every task done stays completed."""
    if status not in STUDY_PLAN_STATUSES:
        raise InvalidArgumentError(f"Status must be one of {', '.join(STUDY_PLAN_STATUSES)}, got {status!r}.")

    plan = await get_study_plan(session, plan_id, user_id)
    plan.status = status
    _refresh_progress(plan)
    plan.updated_at = now or datetime.now(timezone.utc)
    await session.flush()
    return plan
