"""Shared business logic for the readiness API and MCP server."""
from __future__ import annotations

import json
import logging
import math
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from preprod.brain import STAGED_CONTENT_TYPE, BrainClient
from preprod.enricher import ProcessedContent, process_content
from preprod.errors import NotFoundError, SearchError
from preprod.evaluator import active_departments, department_threshold, gate_failure
from preprod.llm import LLMClient
from preprod.models import STATUS_COMPLETED, STATUS_PENDING, Department, DepartmentStageRecord, StagedContentItem
from preprod.scorer import calculate_completeness
from preprod.utils import content_to_text, json_parse, stored_content

log = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def department_summary(dept: Department) -> dict:
    return {
        "id": dept.id, "number": dept.number, "slug": dept.slug, "name": dept.name,
        "description": dept.description, "threshold": department_threshold(dept),
        "weight": dept.weight, "gather_check": dept.gather_check, "is_active": dept.is_active,
    }


def staged_item_summary(item: StagedContentItem) -> dict:
    return {
        "id": item.id, "project_id": item.project_id,
        "content": stored_content(item.content_json),
        "image_url": item.image_url, "document_url": item.document_url,
        "summary": item.summary, "context": item.context,
        "extracted_text": item.extracted_text,
        "iteration_count": item.iteration_count,
        "duplicate_check_score": item.duplicate_check_score,
        "created_by": item.created_by,
        "created_at": _iso(item.created_at), "last_updated": _iso(item.last_updated),
    }


def stage_record_summary(dept: Department, stage: DepartmentStageRecord | None, unlocked: bool) -> dict:
    base = {
        "department_id": dept.id, "department_number": dept.number,
        "department_slug": dept.slug, "department_name": dept.name,
        "threshold": department_threshold(dept), "unlocked": unlocked,
    }
    if stage is None:
        return {**base, "status": STATUS_PENDING}
    return {
        **base,
        "status": stage.status, "rating": stage.rating,
        "task_id": stage.task_id, "task_status": stage.task_status,
        "evaluation_result": stage.evaluation_result or "",
        "evaluation_summary": stage.evaluation_summary or "",
        "issues": json_parse(stage.issues_json, []),
        "suggestions": json_parse(stage.suggestions_json, []),
        "evaluation_duration": stage.evaluation_duration,
        "iteration_count": stage.iteration_count,
        "agent_model": stage.agent_model or "",
        "gather_data_count": stage.gather_data_count or 0,
        "readiness_score": stage.readiness_score,
        "last_evaluated_at": _iso(stage.last_evaluated_at),
    }


# ---------------------------------------------------------------------------
# Departments and readiness
# ---------------------------------------------------------------------------


def list_departments(session: Session) -> list[dict]:
    return [department_summary(d) for d in active_departments(session)]


def get_project_readiness(session: Session, project_id: str) -> dict:
    """Every active department with its stage, gate state and the cached project aggregate."""
    departments = active_departments(session)
    stages = {
        s.department_id: s
        for s in session.execute(
            select(DepartmentStageRecord).where(DepartmentStageRecord.project_id == project_id)
        ).scalars().all()
    }
    by_number = {d.number: d for d in departments}

    rows = []
    for dept in departments:
        previous = by_number.get(dept.number - 1)
        if dept.number == 1:
            unlocked = True
        elif previous is None:
            unlocked = False
        else:
            unlocked = gate_failure(dept, previous, stages.get(previous.id)) is None
        rows.append(stage_record_summary(dept, stages.get(dept.id), unlocked))

    cached = next((s for s in stages.values() if s.readiness_score is not None), None)
    completed = sum(1 for d in departments if stages.get(d.id) and stages[d.id].status == STATUS_COMPLETED)
    return {
        "project_id": project_id,
        "departments": rows,
        "readiness_score": cached.readiness_score if cached else None,
        "consistency": cached.consistency_score if cached else None,
        "completeness": calculate_completeness(completed, len(departments)),
        "recommendation": cached.recommendation if cached else None,
    }


# ---------------------------------------------------------------------------
# Staged content
# ---------------------------------------------------------------------------


def get_staged_item(session: Session, project_id: str, item_id: int) -> StagedContentItem:
    item = session.get(StagedContentItem, item_id)
    if item is None or item.project_id != project_id:
        raise NotFoundError(f"Staged item {item_id} not found in project {project_id}")
    return item


async def stage_content(
    session: Session,
    project_id: str,
    content: Any,
    llm: LLMClient,
    brain: BrainClient,
    *,
    image_url: str | None = None,
    document_url: str | None = None,
    user_id: str = "",
    existing_item_id: int | None = None,
    project_context: str | None = None,
) -> tuple[StagedContentItem, ProcessedContent]:
    """Enrich and store one staged item (caller must commit).

    With *existing_item_id* the item is re-processed and updated in place.
    """
    item = get_staged_item(session, project_id, existing_item_id) if existing_item_id is not None else None

    processed = await process_content(
        content, project_id, llm, brain,
        image_url=image_url, document_url=document_url,
        existing_item_id=existing_item_id, project_context=project_context,
    )

    if item is None:
        item = StagedContentItem(project_id=project_id, created_by=user_id or "")
        session.add(item)
    item.content_json = json.dumps(processed.enriched_content, ensure_ascii=False)
    item.image_url = image_url
    item.document_url = document_url
    item.summary = processed.summary
    item.context = processed.context
    item.extracted_text = processed.extracted_text
    item.iteration_count = processed.iteration_count
    item.duplicate_check_score = processed.duplicate_check_score
    item.last_updated = datetime.now(UTC)
    session.flush()
    if existing_item_id is not None:
        await _unindex_staged_item(brain, item.id, project_id)
    await index_staged_item(brain, item, processed, content_to_text(content))
    return item, processed


async def index_staged_item(
    brain: BrainClient, item: StagedContentItem, processed: ProcessedContent, raw_text: str,
) -> bool:
    """Index a staged item in the search service under its own id. Best-effort."""
    node_content = f"{processed.summary}\n\n{processed.context}\n\n{raw_text}"
    try:
        await brain.add_node(
            STAGED_CONTENT_TYPE, node_content, item.project_id,
            node_id=str(item.id),
            properties={
                "id": str(item.id),
                "summary": processed.summary,
                "context": processed.context,
                "extractedText": processed.extracted_text,
                "imageUrl": item.image_url,
                "documentUrl": item.document_url,
                "createdBy": item.created_by,
            },
        )
    except SearchError as exc:
        log.warning("Could not index staged item %s for project %s: %s", item.id, item.project_id, exc)
        return False
    return True


async def _unindex_staged_item(brain: BrainClient, item_id: int, project_id: str) -> bool:
    try:
        await brain.delete_node(str(item_id))
    except SearchError as exc:
        log.warning("Could not remove staged item %s of project %s from search: %s", item_id, project_id, exc)
        return False
    return True


def stage_message(processed: ProcessedContent) -> str:
    if not processed.duplicates:
        return "Content staged"
    top = processed.duplicates[0]
    return f"Content staged; {len(processed.duplicates)} possible duplicate(s), top match {top.id} ({top.suggestion})"


def list_staged_content(
    session: Session, project_id: str, *, page: int = 1, limit: int = 20, search: str | None = None,
) -> dict:
    stmt = select(StagedContentItem).where(StagedContentItem.project_id == project_id)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(
            StagedContentItem.summary.ilike(pattern),
            StagedContentItem.context.ilike(pattern),
            StagedContentItem.content_json.ilike(pattern),
        ))
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = session.execute(
        stmt.order_by(StagedContentItem.created_at.desc(), StagedContentItem.id.desc())
        .offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    pages = math.ceil(total / limit) if total else 0
    return {
        "items": [staged_item_summary(i) for i in items],
        "total": total, "page": page, "pages": pages, "has_more": page < pages,
    }


def count_staged_content(session: Session, project_id: str) -> dict:
    """Item count and total number of content lines across the project's items."""
    rows = session.execute(
        select(StagedContentItem.content_json).where(StagedContentItem.project_id == project_id)
    ).scalars().all()
    line_count = 0
    for raw in rows:
        text = content_to_text(stored_content(raw))
        if text:
            line_count += len(text.split("\n"))
    return {"count": len(rows), "line_count": line_count}


async def delete_staged_item(session: Session, project_id: str, item_id: int, brain: BrainClient) -> None:
    """Delete one staged item and its search node (caller must commit)."""
    session.delete(get_staged_item(session, project_id, item_id))
    session.flush()
    await _unindex_staged_item(brain, item_id, project_id)


async def clear_staged_content(session: Session, project_id: str, brain: BrainClient) -> int:
    """Delete every staged item of a project (caller must commit). Returns rows removed."""
    item_ids = session.execute(
        select(StagedContentItem.id).where(StagedContentItem.project_id == project_id)
    ).scalars().all()
    for item_id in item_ids:
        await _unindex_staged_item(brain, item_id, project_id)
    result = session.execute(delete(StagedContentItem).where(StagedContentItem.project_id == project_id))
    log.info("Cleared %d staged item(s) for project %s", result.rowcount, project_id)
    return result.rowcount
