from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from preprod import reconciler, services
from preprod.brain import BrainClient
from preprod.config import get_settings
from preprod.db import init_db, session_scope
from preprod.errors import PreprodError
from preprod.evaluator import SequentialEvaluator
from preprod.llm import LLMClient
from preprod.task_service import TaskServiceClient

log = logging.getLogger(__name__)

_evaluator = SequentialEvaluator()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def preprod_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Preprod Readiness",
    instructions=(
        "Department readiness evaluation for movie preproduction projects. "
        "Stage content with stage_content(), check get_project_readiness() to see "
        "which department is unlocked, then evaluate_department() in order. "
        "Use sync_stage() to pull the result of a running evaluation."
    ),
    lifespan=preprod_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("preprod://overview")
def preprod_overview() -> str:
    """Overview of the readiness workflow and its rules."""
    settings = get_settings()
    return json.dumps({
        "system": "Preprod Readiness",
        "workflow": [
            "1. list_departments() to see the evaluation order and thresholds.",
            "2. stage_content(project_id, content) for every piece of raw material.",
            "3. evaluate_department(project_id, 1), then wait for the result (sync_stage).",
            "4. Each next department unlocks once the previous one completed at or above its threshold.",
        ],
        "default_threshold": settings.default_threshold,
        "recommendations": {
            "ready": "Project score 80 or above.",
            "needs_improvement": "Project score 60 to 79.",
            "not_ready": "Project score below 60.",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_departments() -> list[dict]:
    """List active departments in evaluation order with their thresholds."""
    with session_scope() as session:
        return services.list_departments(session)


@mcp.tool()
def get_project_readiness(project_id: str) -> dict:
    """Per-department status, gate state and the project readiness score."""
    with session_scope() as session:
        return services.get_project_readiness(session, project_id)


@mcp.tool()
async def evaluate_department(project_id: str, department_number: int, user_id: str | None = None) -> dict:
    """Submit an evaluation for one department.

    Args:
        project_id: The project to evaluate.
        department_number: Department ordinal (1 = story). Department N requires
            department N-1 to be completed at or above department N's threshold.
        user_id: Optional user to attribute the evaluation to.
    """
    try:
        with session_scope() as session:
            result = await _evaluator.evaluate_department(
                session, project_id, department_number, TaskServiceClient(), user_id=user_id,
            )
    except PreprodError as exc:
        return {"error": str(exc)}
    return {"task_id": result.task_id, "department_slug": result.department_slug, "status": result.status}


@mcp.tool()
async def stage_content(
    project_id: str, content: Any,
    image_url: str | None = None, document_url: str | None = None,
    project_context: str | None = None,
) -> dict:
    """Stage raw content: enrich it, summarize it and report likely duplicates."""
    with session_scope() as session:
        item, processed = await services.stage_content(
            session, project_id, content, LLMClient(), BrainClient(),
            image_url=image_url, document_url=document_url, project_context=project_context,
        )
        session.commit()
        return {
            "item": services.staged_item_summary(item),
            "duplicates": [
                {"id": d.id, "similarity": d.similarity, "suggestion": d.suggestion}
                for d in processed.duplicates
            ],
            "message": services.stage_message(processed),
        }


@mcp.tool()
async def sync_stage(project_id: str, department_id: int) -> dict:
    """Fetch the task status of one department's evaluation and apply it."""
    try:
        with session_scope() as session:
            outcome = await reconciler.sync_stage(session, project_id, department_id, TaskServiceClient())
            session.commit()
    except PreprodError as exc:
        return {"error": str(exc)}
    return {"outcome": outcome}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the readiness MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
