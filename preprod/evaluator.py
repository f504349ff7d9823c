"""Sequential stage gate for department evaluations.

Department N may only be evaluated once department N-1 has a completed stage
record whose rating meets department N's threshold; department 1 is always
unlocked. A passing request is submitted to the task service and the stage
record moves to ``in_progress``. Scoring itself happens asynchronously and is
reconciled by ``preprod.reconciler``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from preprod.config import get_settings
from preprod.errors import (
    DepartmentConfigError, DepartmentNotFoundError, EvaluationInProgressError,
    PreconditionError, TaskServiceError,
)
from preprod.models import (
    STATUS_COMPLETED, STATUS_IN_PROGRESS, Department, DepartmentStageRecord, StagedContentItem,
)
from preprod.reconciler import refresh_project_score
from preprod.task_service import EvaluationTask, TaskServiceClient
from preprod.utils import stored_content

log = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    task_id: str
    department_slug: str
    status: str = STATUS_IN_PROGRESS


def _fmt(value: float) -> str:
    return f"{value:g}"


def department_threshold(department: Department) -> int:
    if department.threshold is None:
        return get_settings().default_threshold
    return department.threshold


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def active_departments(session: Session) -> list[Department]:
    return list(session.execute(
        select(Department).where(Department.is_active.is_(True)).order_by(Department.number)
    ).scalars().all())


def validate_department_sequence(departments: list[Department]) -> None:
    """Active department numbers must be exactly 1..n."""
    numbers = [d.number for d in departments]
    expected = list(range(1, len(numbers) + 1))
    if numbers != expected:
        raise DepartmentConfigError(
            f"Department numbers must be contiguous from 1, got {numbers}"
        )


def get_department(session: Session, number: int) -> Department:
    dept = session.execute(
        select(Department).where(Department.number == number, Department.is_active.is_(True))
    ).scalars().first()
    if dept is None:
        raise DepartmentNotFoundError(number)
    return dept


def get_stage(session: Session, project_id: str, department_id: int) -> DepartmentStageRecord | None:
    return session.execute(
        select(DepartmentStageRecord).where(
            DepartmentStageRecord.project_id == project_id,
            DepartmentStageRecord.department_id == department_id,
        )
    ).scalars().first()


# ---------------------------------------------------------------------------
# Gating
# ---------------------------------------------------------------------------


def gate_failure(
    department: Department,
    previous: Department,
    previous_stage: DepartmentStageRecord | None,
) -> PreconditionError | None:
    """The error that blocks *department*, or None when the gate is open."""
    threshold = department_threshold(department)
    if previous_stage is None:
        return PreconditionError(
            f"Cannot evaluate {department.name}. "
            f"Previous department ({previous.name}) has not been evaluated yet.",
            department=department.name, previous_department=previous.name, threshold=threshold,
        )
    if previous_stage.status != STATUS_COMPLETED:
        return PreconditionError(
            f"Cannot evaluate {department.name}. "
            f"Previous department ({previous.name}) has not completed its evaluation "
            f"(status: {previous_stage.status}).",
            department=department.name, previous_department=previous.name, threshold=threshold,
        )
    rating = previous_stage.rating or 0
    if rating < threshold:
        return PreconditionError(
            f"Cannot evaluate {department.name}. "
            f"Previous department ({previous.name}) scored {_fmt(rating)}, "
            f"but threshold is {threshold}.",
            department=department.name, previous_department=previous.name,
            rating=rating, threshold=threshold,
        )
    return None


def check_gate(session: Session, project_id: str, department: Department) -> None:
    """Raise PreconditionError unless *department* may be evaluated now."""
    if department.number == 1:
        return
    previous = get_department(session, department.number - 1)
    error = gate_failure(department, previous, get_stage(session, project_id, previous.id))
    if error is not None:
        raise error


# ---------------------------------------------------------------------------
# Cascading context
# ---------------------------------------------------------------------------


def collect_gather_data(session: Session, project_id: str) -> list[dict[str, Any]]:
    items = session.execute(
        select(StagedContentItem).where(StagedContentItem.project_id == project_id)
    ).scalars().all()
    return [
        {
            "content": stored_content(item.content_json),
            "summary": item.summary or None,
            "context": item.context or None,
            "image_url": item.image_url,
            "document_url": item.document_url,
        }
        for item in items
    ]


def collect_previous_evaluations(session: Session, project_id: str, number: int) -> list[dict[str, Any]]:
    rows = session.execute(
        select(Department, DepartmentStageRecord)
        .join(DepartmentStageRecord, DepartmentStageRecord.department_id == Department.id)
        .where(
            Department.number < number,
            Department.gather_check.is_(True),
            DepartmentStageRecord.project_id == project_id,
            DepartmentStageRecord.status == STATUS_COMPLETED,
        )
        .order_by(Department.number)
    ).all()
    return [
        {"department": dept.slug, "rating": stage.rating or 0, "summary": stage.evaluation_summary or ""}
        for dept, stage in rows
    ]


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class SequentialEvaluator:
    """Submits department evaluations, one live task per (project, department).

    Holds an in-process lock per stage so two simultaneous requests for the
    same stage cannot both submit; the second is refused.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}

    def _lock_for(self, project_id: str, department_number: int) -> asyncio.Lock:
        key = (project_id, department_number)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def evaluate_department(
        self,
        session: Session,
        project_id: str,
        department_number: int,
        task_client: TaskServiceClient,
        user_id: str | None = None,
    ) -> EvaluationResult:
        lock = self._lock_for(project_id, department_number)
        if lock.locked():
            raise EvaluationInProgressError(
                f"An evaluation submit for department {department_number} is already running"
            )
        try:
            async with lock:
                return await self._evaluate(session, project_id, department_number, task_client, user_id)
        finally:
            key = (project_id, department_number)
            if not lock.locked() and self._locks.get(key) is lock:
                del self._locks[key]

    async def _evaluate(
        self,
        session: Session,
        project_id: str,
        department_number: int,
        task_client: TaskServiceClient,
        user_id: str | None,
    ) -> EvaluationResult:
        department = get_department(session, department_number)
        validate_department_sequence(active_departments(session))
        check_gate(session, project_id, department)

        gather_data = collect_gather_data(session, project_id)
        previous_evaluations = collect_previous_evaluations(session, project_id, department_number)
        threshold = department_threshold(department)

        # Submission errors propagate; the stage record is untouched until it succeeds
        task = await task_client.submit_evaluation(EvaluationTask(
            project_id=project_id,
            department_slug=department.slug,
            department_number=department.number,
            department_id=department.id,
            gather_data=gather_data,
            previous_evaluations=previous_evaluations,
            threshold=threshold,
            user_id=user_id,
        ))
        task_id = str(task["task_id"])

        stage = get_stage(session, project_id, department.id)
        if stage is None:
            stage = DepartmentStageRecord(project_id=project_id, department_id=department.id)
            session.add(stage)
        elif stage.status == STATUS_IN_PROGRESS and stage.task_id and stage.task_id != task_id:
            await self._cancel_superseded(task_client, stage.task_id)

        was_completed = stage.status == STATUS_COMPLETED
        stage.status = STATUS_IN_PROGRESS
        stage.task_id = task_id
        stage.task_status = str(task.get("status") or "queued")
        stage.gather_data_count = len(gather_data)
        stage.submitted_at = datetime.now(UTC)
        session.flush()
        if was_completed:
            # The old rating no longer counts toward the project score
            refresh_project_score(session, project_id)
        session.commit()

        log.info("Evaluation submitted: project=%s department=%s task=%s",
                 project_id, department.slug, task_id)
        return EvaluationResult(task_id=task_id, department_slug=department.slug)

    @staticmethod
    async def _cancel_superseded(task_client: TaskServiceClient, task_id: str) -> None:
        try:
            await task_client.cancel_task(task_id)
            log.info("Cancelled superseded evaluation task %s", task_id)
        except TaskServiceError as exc:
            log.warning("Could not cancel superseded task %s: %s", task_id, exc)
