from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from preprod import reconciler, services
from preprod.brain import BrainClient
from preprod.config import get_settings
from preprod.db import init_db, session_generator, session_scope
from preprod.errors import (
    DepartmentConfigError, EvaluationInProgressError, NotFoundError,
    PreconditionError, PreprodError, TaskServiceError,
)
from preprod.evaluator import SequentialEvaluator
from preprod.llm import LLMClient
from preprod.quality_gates import get_quality_recommendation, run_all_quality_gates
from preprod.scheduler import PollScheduler
from preprod.schemas import (
    DepartmentOut,
    EvaluateRequest,
    EvaluateResponse,
    GatherCountOut,
    OrchestratorResult,
    QualityGatesResponse,
    ReadinessOut,
    StageContentRequest,
    StageContentResult,
    StagedContentList,
    TaskStatusOut,
    WebhookPayload,
)
from preprod.task_service import TaskServiceClient

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.evaluator = SequentialEvaluator()
    app.state.scheduler = PollScheduler(
        get_settings().poll_interval_seconds, TaskServiceClient, session_scope,
    )
    app.state.scheduler.start()
    yield
    await app.state.scheduler.stop()


app = FastAPI(
    title="Preprod Readiness",
    version="0.1.0",
    description=(
        "Department readiness evaluation for movie preproduction projects. "
        "Stage raw content, evaluate departments in sequence through an external "
        "task service, and track the project readiness score."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Departments", "description": "Configured evaluation departments, in order."},
        {"name": "Gather", "description": "Stage, enrich and deduplicate raw project content."},
        {"name": "Readiness", "description": "Sequential department evaluation and project readiness."},
        {"name": "Quality", "description": "Quality gates over orchestrator results."},
        {"name": "Webhooks", "description": "Inbound task-service callbacks."},
        {"name": "Admin", "description": "Health and maintenance operations."},
    ],
)


_STATUS_CODES: list[tuple[type[PreprodError], int]] = [
    (NotFoundError, 404),
    (PreconditionError, 409),
    (DepartmentConfigError, 409),
    (EvaluationInProgressError, 409),
    (TaskServiceError, 502),
]


@app.exception_handler(PreprodError)
async def preprod_error_handler(request: Request, exc: PreprodError):
    status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    body: dict = {"detail": str(exc)}
    if isinstance(exc, PreconditionError):
        body.update(
            department=exc.department, previous_department=exc.previous_department,
            rating=exc.rating, threshold=exc.threshold,
        )
    elif isinstance(exc, TaskServiceError):
        body["retryable"] = exc.retryable
    if status >= 500:
        log.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(body, status_code=status)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_task_client() -> TaskServiceClient:
    return TaskServiceClient()


def get_llm_client() -> LLMClient:
    return LLMClient()


def get_brain_client() -> BrainClient:
    return BrainClient()


def get_evaluator(request: Request) -> SequentialEvaluator:
    return request.app.state.evaluator


def get_scheduler(request: Request) -> PollScheduler:
    return request.app.state.scheduler


# ---------------------------------------------------------------------------
# Routes: Departments
# ---------------------------------------------------------------------------


@app.get("/api/departments", response_model=list[DepartmentOut],
         tags=["Departments"], summary="List active departments in evaluation order")
async def list_departments(session: Session = Depends(db_session)):
    return services.list_departments(session)


# ---------------------------------------------------------------------------
# Routes: Gather (staged content)
# ---------------------------------------------------------------------------


@app.post("/api/v1/gather/{project_id}", response_model=StageContentResult,
          tags=["Gather"], summary="Stage content: enrich, summarize and check for duplicates")
async def stage_content(
    project_id: str,
    body: StageContentRequest,
    session: Session = Depends(db_session),
    llm: LLMClient = Depends(get_llm_client),
    brain: BrainClient = Depends(get_brain_client),
):
    item, processed = await services.stage_content(
        session, project_id, body.content, llm, brain,
        image_url=body.image_url, document_url=body.document_url,
        user_id=body.user_id, existing_item_id=body.existing_item_id,
        project_context=body.project_context,
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


@app.get("/api/v1/gather/{project_id}", response_model=StagedContentList,
         tags=["Gather"], summary="List staged content with pagination and search")
async def list_staged_content(
    project_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str | None = None,
    session: Session = Depends(db_session),
):
    return services.list_staged_content(session, project_id, page=page, limit=limit, search=search)


@app.get("/api/v1/gather/{project_id}/count", response_model=GatherCountOut,
         tags=["Gather"], summary="Count staged items and content lines")
async def count_staged_content(project_id: str, session: Session = Depends(db_session)):
    return services.count_staged_content(session, project_id)


@app.delete("/api/v1/gather/{project_id}/clear", tags=["Gather"],
            summary="Delete all staged content of a project")
async def clear_staged_content(
    project_id: str,
    session: Session = Depends(db_session),
    brain: BrainClient = Depends(get_brain_client),
):
    deleted = await services.clear_staged_content(session, project_id, brain)
    session.commit()
    return {"ok": True, "deleted": deleted}


@app.delete("/api/v1/gather/{project_id}/{item_id}", tags=["Gather"],
            summary="Delete one staged item")
async def delete_staged_item(
    project_id: str, item_id: int,
    session: Session = Depends(db_session),
    brain: BrainClient = Depends(get_brain_client),
):
    await services.delete_staged_item(session, project_id, item_id, brain)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Readiness
# ---------------------------------------------------------------------------


@app.post("/api/v1/project-readiness/sweep-stale", tags=["Admin"],
          summary="Fail in-progress evaluations that have gone stale")
async def sweep_stale(
    max_age_seconds: float | None = Query(None, gt=0),
    session: Session = Depends(db_session),
):
    swept = reconciler.sweep_stale(session, max_age_seconds=max_age_seconds)
    session.commit()
    return {"ok": True, "swept": swept}


@app.get("/api/v1/project-readiness/{project_id}", response_model=ReadinessOut,
         tags=["Readiness"], summary="Department stages, gate state and project readiness")
async def get_project_readiness(project_id: str, session: Session = Depends(db_session)):
    return services.get_project_readiness(session, project_id)


@app.post("/api/v1/project-readiness/{project_id}/evaluate", response_model=EvaluateResponse,
          tags=["Readiness"], summary="Submit a department evaluation (sequentially gated)")
async def evaluate_department(
    project_id: str,
    body: EvaluateRequest,
    session: Session = Depends(db_session),
    task_client: TaskServiceClient = Depends(get_task_client),
    evaluator: SequentialEvaluator = Depends(get_evaluator),
):
    result = await evaluator.evaluate_department(
        session, project_id, body.department_number, task_client, user_id=body.user_id,
    )
    return {"task_id": result.task_id, "department_slug": result.department_slug, "status": result.status}


@app.get("/api/v1/project-readiness/{project_id}/task/{task_id}/status", response_model=TaskStatusOut,
         tags=["Readiness"], summary="Live status of an evaluation task")
async def get_task_status(
    project_id: str, task_id: str,
    task_client: TaskServiceClient = Depends(get_task_client),
):
    try:
        return await task_client.get_task_status(task_id)
    except TaskServiceError as exc:
        if exc.status_code == 404:
            raise HTTPException(404, f"Task {task_id} not found") from exc
        raise


@app.delete("/api/v1/project-readiness/{project_id}/task/{task_id}/cancel",
            tags=["Readiness"], summary="Cancel an evaluation and release the stage")
async def cancel_evaluation(
    project_id: str, task_id: str,
    session: Session = Depends(db_session),
    task_client: TaskServiceClient = Depends(get_task_client),
):
    stage = await reconciler.cancel_evaluation(session, project_id, task_id, task_client)
    session.commit()
    return {"ok": True, "task_id": task_id, "status": stage.status, "task_status": stage.task_status}


@app.post("/api/v1/project-readiness/{project_id}/department/{department_id}/sync",
          tags=["Readiness"], summary="Fetch task status for one stage and apply it")
async def sync_stage(
    project_id: str, department_id: int,
    session: Session = Depends(db_session),
    task_client: TaskServiceClient = Depends(get_task_client),
):
    outcome = await reconciler.sync_stage(session, project_id, department_id, task_client)
    session.commit()
    return {"ok": True, "outcome": outcome}


@app.post("/api/v1/project-readiness/{project_id}/polling", tags=["Readiness"],
          summary="Start background polling of in-progress evaluations")
async def start_polling(project_id: str, scheduler: PollScheduler = Depends(get_scheduler)):
    scheduler.subscribe(project_id)
    return {"ok": True, "polling": True, "interval": scheduler.interval}


@app.delete("/api/v1/project-readiness/{project_id}/polling", tags=["Readiness"],
            summary="Stop background polling for a project")
async def stop_polling(project_id: str, scheduler: PollScheduler = Depends(get_scheduler)):
    scheduler.unsubscribe(project_id)
    return {"ok": True, "polling": False}


# ---------------------------------------------------------------------------
# Routes: Quality gates
# ---------------------------------------------------------------------------


@app.post("/api/quality-gates", response_model=QualityGatesResponse,
          tags=["Quality"], summary="Run all quality gates on an orchestrator result")
async def quality_gates(body: OrchestratorResult):
    report = run_all_quality_gates(body)
    action, reason = get_quality_recommendation(report.gates)
    return {
        "passed": report.passed,
        "overall_score": report.overall_score,
        "gates": [g.to_dict() for g in report.gates],
        "action": action,
        "reason": reason,
    }


# ---------------------------------------------------------------------------
# Routes: Webhooks
# ---------------------------------------------------------------------------


@app.get("/api/webhooks/evaluation-complete", tags=["Webhooks"],
         summary="Webhook endpoint health check")
async def webhook_health():
    return {"status": "ok", "endpoint": "evaluation-complete"}


@app.post("/api/webhooks/evaluation-complete", tags=["Webhooks"],
          summary="Receive an evaluation result from the task service")
async def evaluation_complete(payload: WebhookPayload, session: Session = Depends(db_session)):
    outcome = reconciler.apply_task_update(session, payload)
    session.commit()
    body = {"received": True, "status": payload.status, "outcome": outcome}
    if outcome == reconciler.NOT_FOUND:
        body["warning"] = "Evaluation not found"
    return body


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Admin"], summary="Service health, including the task service")
async def health(task_client: TaskServiceClient = Depends(get_task_client)):
    try:
        task_service = {"ok": True, **await task_client.check_health()}
    except TaskServiceError as exc:
        log.warning("Task service health check failed: %s", exc)
        task_service = {"ok": False, "error": str(exc)}
    return {"status": "ok", "task_service": task_service}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("preprod.app:app", host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
