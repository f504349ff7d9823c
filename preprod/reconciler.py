"""Task status reconciliation: webhook, poll, cancel and stale sweep.

Every inbound task event, whichever path delivers it, goes through
``apply_task_update``. A stage record that is already terminal is never
rewritten, so delivering the same event twice is a no-op.

Functions here do not commit; the caller owns the transaction.
"""
from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from preprod.config import get_settings
from preprod.errors import NotFoundError
from preprod.models import (
    STATUS_COMPLETED, STATUS_FAILED, STATUS_IN_PROGRESS, TERMINAL_STATUSES,
    Department, DepartmentStageRecord,
)
from preprod.schemas import WebhookPayload
from preprod.scorer import DepartmentScore, ReadinessSummary, summarize
from preprod.task_service import TaskServiceClient

log = logging.getLogger(__name__)

# Outcomes of apply_task_update
UPDATED = "updated"
NOT_FOUND = "not_found"
ALREADY_TERMINAL = "already_terminal"
PROGRESS = "progress"
IGNORED = "ignored"

CANCELLED = "cancelled"
_FAILED_STATUSES = (STATUS_FAILED, CANCELLED)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def find_stage_by_task(session: Session, task_id: str) -> DepartmentStageRecord | None:
    return session.execute(
        select(DepartmentStageRecord).where(DepartmentStageRecord.task_id == task_id)
    ).scalars().first()


# ---------------------------------------------------------------------------
# Project score cache
# ---------------------------------------------------------------------------


def refresh_project_score(session: Session, project_id: str) -> ReadinessSummary:
    """Recompute the project aggregate and write it onto every stage record of the project."""
    active_count = len(session.execute(
        select(Department.id).where(Department.is_active.is_(True))
    ).all())
    rows = session.execute(
        select(DepartmentStageRecord, Department)
        .join(Department, DepartmentStageRecord.department_id == Department.id)
        .where(
            DepartmentStageRecord.project_id == project_id,
            DepartmentStageRecord.status == STATUS_COMPLETED,
            Department.is_active.is_(True),
        )
        .order_by(Department.number)
    ).all()
    scores = [
        DepartmentScore(
            rating=stage.rating or 0,
            weight=dept.weight,
            department_slug=dept.slug,
            department_number=dept.number,
        )
        for stage, dept in rows
    ]
    summary = summarize(scores, active_count)

    stages = session.execute(
        select(DepartmentStageRecord).where(DepartmentStageRecord.project_id == project_id)
    ).scalars().all()
    for stage in stages:
        stage.readiness_score = summary.score
        stage.consistency_score = summary.consistency
        stage.recommendation = summary.recommendation
    session.flush()

    log.info("Project %s readiness: score=%d consistency=%d completeness=%d (%s)",
             project_id, summary.score, summary.consistency, summary.completeness,
             summary.recommendation)
    return summary


# ---------------------------------------------------------------------------
# Inbound task events
# ---------------------------------------------------------------------------


def apply_task_update(session: Session, payload: WebhookPayload) -> str:
    """Apply one task event to the stage record it belongs to.

    Returns one of ``updated``, ``not_found``, ``already_terminal``,
    ``progress`` or ``ignored``.
    """
    stage = find_stage_by_task(session, payload.task_id)
    if stage is None:
        log.warning("No stage record for task %s (status=%s)", payload.task_id, payload.status)
        return NOT_FOUND

    if stage.status in TERMINAL_STATUSES:
        log.info("Task %s already %s; ignoring %s event", payload.task_id, stage.status, payload.status)
        return ALREADY_TERMINAL

    status = (payload.status or "").lower()

    if status == STATUS_COMPLETED:
        if payload.result is None:
            log.warning("Task %s reported completed without a result", payload.task_id)
            return IGNORED
        result = payload.result
        stage.rating = result.rating
        stage.evaluation_result = result.evaluation_result
        stage.evaluation_summary = result.evaluation_summary
        stage.issues_json = json.dumps(result.issues or [])
        stage.suggestions_json = json.dumps(result.suggestions or [])
        stage.evaluation_duration = result.processing_time
        stage.iteration_count = result.iteration_count
        stage.agent_model = str((result.metadata or {}).get("model") or "")
        stage.status = STATUS_COMPLETED
        stage.task_status = STATUS_COMPLETED
        stage.last_evaluated_at = _utcnow()
        session.flush()
        log.info("Stage completed: project=%s department_id=%d rating=%s",
                 stage.project_id, stage.department_id, result.rating)
        refresh_project_score(session, stage.project_id)
        return UPDATED

    if status in _FAILED_STATUSES:
        stage.status = STATUS_FAILED
        stage.task_status = status
        if status == CANCELLED:
            stage.evaluation_result = payload.error or "Evaluation cancelled"
        else:
            stage.evaluation_result = payload.error or "Evaluation failed"
        session.flush()
        log.info("Stage failed: project=%s department_id=%d task=%s error=%s",
                 stage.project_id, stage.department_id, payload.task_id, stage.evaluation_result)
        refresh_project_score(session, stage.project_id)
        return UPDATED

    # Queued / running / anything else non-terminal
    if stage.status == STATUS_IN_PROGRESS and status:
        stage.task_status = status
        session.flush()
    return PROGRESS


async def sync_stage(
    session: Session,
    project_id: str,
    department_id: int,
    task_client: TaskServiceClient,
) -> str:
    """Fetch the live task status for one stage and apply it like a webhook."""
    stage = session.execute(
        select(DepartmentStageRecord).where(
            DepartmentStageRecord.project_id == project_id,
            DepartmentStageRecord.department_id == department_id,
        )
    ).scalars().first()
    if stage is None or not stage.task_id:
        raise NotFoundError(f"No submitted evaluation for department {department_id} in project {project_id}")
    if stage.status in TERMINAL_STATUSES:
        return ALREADY_TERMINAL

    status = await task_client.get_task_status(stage.task_id)
    return apply_task_update(session, WebhookPayload(
        task_id=status.task_id,
        status=status.status,
        project_id=project_id,
        result=status.result,
        error=status.error,
    ))


# ---------------------------------------------------------------------------
# Unsticking abandoned stages
# ---------------------------------------------------------------------------


async def cancel_evaluation(
    session: Session,
    project_id: str,
    task_id: str,
    task_client: TaskServiceClient,
) -> DepartmentStageRecord:
    """Cancel a running evaluation and mark its stage failed so the sequence can move on."""
    stage = find_stage_by_task(session, task_id)
    if stage is None or stage.project_id != project_id:
        raise NotFoundError(f"Task {task_id} not found in project {project_id}")

    await task_client.cancel_task(task_id)

    if stage.status not in TERMINAL_STATUSES:
        stage.status = STATUS_FAILED
        stage.task_status = CANCELLED
        stage.evaluation_result = "Evaluation cancelled"
        session.flush()
        log.info("Cancelled evaluation: project=%s task=%s", project_id, task_id)
        refresh_project_score(session, project_id)
    return stage


def sweep_stale(session: Session, now: datetime | None = None, max_age_seconds: float | None = None) -> int:
    """Fail every in_progress stage submitted longer ago than the stale timeout.

    Returns the number of records swept.
    """
    now = _as_utc(now or _utcnow())
    if max_age_seconds is None:
        max_age_seconds = get_settings().stale_after_seconds
    cutoff = now - timedelta(seconds=max_age_seconds)

    stages = session.execute(
        select(DepartmentStageRecord).where(DepartmentStageRecord.status == STATUS_IN_PROGRESS)
    ).scalars().all()

    swept = 0
    swept_projects: set[str] = set()
    for stage in stages:
        started = stage.submitted_at or stage.updated_at or stage.created_at
        if started is None or _as_utc(started) > cutoff:
            continue
        stage.status = STATUS_FAILED
        stage.task_status = "stale"
        stage.evaluation_result = (
            f"Evaluation abandoned: no result for task {stage.task_id} "
            f"after {int(max_age_seconds)} seconds. Re-run the evaluation."
        )
        swept += 1
        swept_projects.add(stage.project_id)
        log.warning("Swept stale stage: project=%s department_id=%d task=%s",
                    stage.project_id, stage.department_id, stage.task_id)
    if swept:
        session.flush()
    for project_id in sorted(swept_projects):
        refresh_project_score(session, project_id)
    return swept
