"""Pydantic request/response schemas for the readiness API and external contracts."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DuplicateSuggestion = Literal["skip", "merge", "review"]
Recommendation = Literal["ready", "needs_improvement", "not_ready"]


class DepartmentOut(BaseModel):
    id: int
    number: int
    slug: str
    name: str
    description: str
    threshold: int
    weight: float | None = None
    gather_check: bool
    is_active: bool


# ---------------------------------------------------------------------------
# Staged content
# ---------------------------------------------------------------------------


class StageContentRequest(BaseModel):
    content: Any
    image_url: str | None = None
    document_url: str | None = None
    user_id: str = ""
    existing_item_id: int | None = None
    project_context: str | None = None

    @field_validator("content")
    @classmethod
    def content_must_not_be_empty(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("content must not be empty")
        return v


class DuplicateMatchOut(BaseModel):
    id: str
    similarity: float
    suggestion: DuplicateSuggestion


class StagedContentOut(BaseModel):
    id: int
    project_id: str
    content: Any
    image_url: str | None = None
    document_url: str | None = None
    summary: str
    context: str
    extracted_text: str | None = None
    iteration_count: int
    duplicate_check_score: float | None = None
    created_by: str
    created_at: str | None = None
    last_updated: str | None = None


class StageContentResult(BaseModel):
    item: StagedContentOut
    duplicates: list[DuplicateMatchOut] = []
    message: str


class StagedContentList(BaseModel):
    items: list[StagedContentOut]
    total: int
    page: int
    pages: int
    has_more: bool


class GatherCountOut(BaseModel):
    count: int
    line_count: int


# ---------------------------------------------------------------------------
# Evaluation / readiness
# ---------------------------------------------------------------------------


class EvaluateRequest(BaseModel):
    department_number: int = Field(..., ge=1)
    user_id: str | None = None


class EvaluateResponse(BaseModel):
    task_id: str
    department_slug: str
    status: Literal["in_progress"]


class StageRecordOut(BaseModel):
    department_id: int
    department_number: int
    department_slug: str
    department_name: str
    threshold: int
    unlocked: bool
    status: str
    rating: float | None = None
    task_id: str | None = None
    task_status: str | None = None
    evaluation_result: str = ""
    evaluation_summary: str = ""
    issues: list[str] = []
    suggestions: list[str] = []
    evaluation_duration: float | None = None
    iteration_count: int | None = None
    agent_model: str = ""
    gather_data_count: int = 0
    readiness_score: int | None = None
    last_evaluated_at: str | None = None


class ReadinessOut(BaseModel):
    project_id: str
    departments: list[StageRecordOut]
    readiness_score: int | None = None
    consistency: int | None = None
    completeness: int
    recommendation: Recommendation | None = None


# ---------------------------------------------------------------------------
# Task service contracts
# ---------------------------------------------------------------------------


class WebhookResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    rating: float = Field(..., ge=0, le=100)
    evaluation_result: str = ""
    evaluation_summary: str = ""
    issues: list[str] | None = None
    suggestions: list[str] | None = None
    processing_time: float | None = None
    iteration_count: int | None = None
    metadata: dict[str, Any] | None = None


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    task_id: str
    status: str
    project_id: str | None = None
    result: WebhookResult | None = None
    error: str | None = None


class TaskStatusOut(BaseModel):
    model_config = ConfigDict(extra="allow")

    task_id: str
    status: str
    progress: float | None = None
    current_step: str | None = None
    result: WebhookResult | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Quality gate inputs
# ---------------------------------------------------------------------------


class SpecialistOutputRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    decision: str = ""


class DepartmentReport(BaseModel):
    department: str
    department_quality: float
    relevance: float
    status: str = "complete"
    outputs: list[SpecialistOutputRef] = []
    issues: list[str] = []


class OrchestratorResult(BaseModel):
    overall_quality: float
    completeness: float
    consistency: float
    brain_validated: bool
    brain_quality_score: float = 0.0
    department_reports: list[DepartmentReport] = []


class QualityGateOut(BaseModel):
    name: str
    threshold: float
    passed: bool
    score: float
    issues: list[str]


class QualityGatesResponse(BaseModel):
    passed: bool
    overall_score: float
    gates: list[QualityGateOut]
    action: Literal["ingest", "modify", "discard"]
    reason: str
