"""Workflow for drafting a study plan with the model and storing it."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.bot.openai_utils import extract_output_text
from src.db import StudyPlan
from src.db.study_plans import MAX_PLAN_DAYS, create_study_plan
from src.db.users import increment_user_statistics


LOGGER = logging.getLogger(__name__)

DEFAULT_PLAN_DAYS = 7
_TASK_LINE = re.compile(r"^-?\s*Day\s+(\d+)\s*:\s*(.+)$", re.IGNORECASE)


@dataclass(slots=True)
class GeneratedStudyPlan:
    title: str
    description: str
    tasks: List[Tuple[int, str]] = field(default_factory=list)


@dataclass(slots=True)
class StudyPlanWorkflowResult:
    handled: bool
    plan: Optional[StudyPlan] = None
    errors: List[str] = field(default_factory=list)


def parse_study_plan(text: str, duration_days: int) -> GeneratedStudyPlan:
    """Read ``Title:``, ``Description:`` and ``- Day N: task`` lines.

    Tasks scheduled outside ``1..duration_days`` are dropped.
    """
    plan = GeneratedStudyPlan(title="Custom Study Plan", description="")
    for raw_line in text.splitlines():
        line = raw_line.strip().replace("**", "")
        if line.lower().startswith("title:"):
            plan.title = line[6:].strip() or plan.title
        elif line.lower().startswith("description:"):
            plan.description = line[12:].strip()
        else:
            match = _TASK_LINE.match(line)
            if match:
                day = int(match.group(1))
                if 1 <= day <= duration_days:
                    plan.tasks.append((day, match.group(2).strip()))
    return plan


class StudyPlanWorkflow:
    """Coordinates LLM drafting and database persistence for study plans."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        session_factory: Optional[async_sessionmaker[AsyncSession]],
    ) -> None:
        self._client = client
        self._model = model
        self._session_factory = session_factory

    def _build_prompt(self, goals: Sequence[str], duration_days: int, level: str) -> str:
        numbered = "\n".join(f"{index}. {goal}" for index, goal in enumerate(goals, start=1))
        return (
            f"Create a {duration_days}-day study plan for a {level} level student with these goals:\n"
            f"{numbered}\n\n"
            "Format:\n"
            "Title: [Plan title]\n"
            "Description: [Brief description]\n"
            "Tasks:\n"
            "- Day X: [Task]\n\n"
            "Make it realistic, progressive, and motivating."
        )

    async def handle(
        self,
        chat_id: int,
        goals: Sequence[str],
        duration_days: int = DEFAULT_PLAN_DAYS,
        level: str = "intermediate",
        now: Optional[datetime] = None,
    ) -> StudyPlanWorkflowResult:
        """Draft a plan for ``goals`` and save it for ``chat_id``."""
        if self._session_factory is None:
            return StudyPlanWorkflowResult(False, errors=["Study plan storage is not configured."])

        goals = [goal.strip() for goal in goals if goal.strip()]
        if not goals:
            return StudyPlanWorkflowResult(False, errors=["Tell me at least one goal for the plan."])
        if not 1 <= duration_days <= MAX_PLAN_DAYS:
            return StudyPlanWorkflowResult(
                False, errors=[f"Plans can last between 1 and {MAX_PLAN_DAYS} days."]
            )

        try:
            response = await self._client.responses.create(
                model=self._model,
                input=[{"role": "user", "content": self._build_prompt(goals, duration_days, level)}],
                max_output_tokens=1000,
            )
        except Exception:
            LOGGER.exception("Study plan generation failed for chat %s.", chat_id)
            return StudyPlanWorkflowResult(
                False,
                errors=["Could not draft a study plan right now. Please try again later."],
            )

        drafted = parse_study_plan(extract_output_text(response), duration_days)
        if not drafted.tasks:
            LOGGER.warning("Study plan for chat %s had no readable tasks.", chat_id)
            return StudyPlanWorkflowResult(False, errors=["The drafted plan could not be read."])

        async with self._session_factory() as session:
            async with session.begin():
                plan = await create_study_plan(
                    session,
                    chat_id,
                    title=drafted.title,
                    description=drafted.description,
                    goals=goals,
                    tasks=drafted.tasks,
                    duration_days=duration_days,
                    start=now,
                )
                await increment_user_statistics(session, chat_id, plans=1)

        return StudyPlanWorkflowResult(True, plan=plan)
