from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

STAGE_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class Base(DeclarativeBase):
    pass


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    gather_check: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    stages: Mapped[list[DepartmentStageRecord]] = relationship("DepartmentStageRecord", back_populates="department")


class StagedContentItem(Base):
    __tablename__ = "staged_content"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    content_json: Mapped[str] = mapped_column(Text, default="")
    image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    document_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    summary: Mapped[str] = mapped_column(Text, default="")
    context: Mapped[str] = mapped_column(Text, default="")
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    iteration_count: Mapped[int] = mapped_column(Integer, default=0)
    duplicate_check_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_by: Mapped[str] = mapped_column(String(200), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    last_updated: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class DepartmentStageRecord(Base):
    """One row per (project, department).

    ``readiness_score``, ``consistency_score`` and ``recommendation`` are a
    denormalized cache of the project-level aggregate, rewritten only by
    ``reconciler.refresh_project_score``.
    """
    __tablename__ = "stage_records"
    __table_args__ = (UniqueConstraint("project_id", "department_id", name="uq_stage_project_department"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    department_id: Mapped[int] = mapped_column(Integer, ForeignKey("departments.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING)  # pending | in_progress | completed | failed
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)

    task_id: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    task_status: Mapped[str | None] = mapped_column(String(50), nullable=True)

    evaluation_result: Mapped[str] = mapped_column(Text, default="")
    evaluation_summary: Mapped[str] = mapped_column(Text, default="")
    issues_json: Mapped[str] = mapped_column(Text, default="[]")
    suggestions_json: Mapped[str] = mapped_column(Text, default="[]")
    evaluation_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    iteration_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    agent_model: Mapped[str] = mapped_column(String(200), default="")
    gather_data_count: Mapped[int] = mapped_column(Integer, default=0)

    readiness_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    consistency_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recommendation: Mapped[str | None] = mapped_column(String(30), nullable=True)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_evaluated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    department: Mapped[Department] = relationship("Department", back_populates="stages")
