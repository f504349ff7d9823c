"""Tests for webhook / poll reconciliation, cancellation and the stale sweep."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from preprod import reconciler, services
from preprod.errors import NotFoundError, TaskServiceError
from preprod.models import DepartmentStageRecord
from preprod.schemas import TaskStatusOut, WebhookPayload, WebhookResult


def _stage(session, department, task_id="task-1", status="in_progress", **kwargs):
    stage = DepartmentStageRecord(
        project_id=kwargs.pop("project_id", "p1"), department_id=department.id,
        status=status, task_id=task_id, **kwargs,
    )
    session.add(stage)
    session.commit()
    return stage


def _completed(task_id="task-1", rating=85.0, **result):
    return WebhookPayload(
        task_id=task_id, status="completed", project_id="p1",
        result=WebhookResult(
            rating=rating,
            evaluation_result=result.get("evaluation_result", "Detailed findings"),
            evaluation_summary=result.get("evaluation_summary", "Solid structure"),
            issues=["Pacing in act two"], suggestions=["Tighten the midpoint"],
            processing_time=42.5, iteration_count=2, metadata={"model": "eval-model-1"},
        ),
    )


class TestApplyTaskUpdate:
    def test_completed_copies_result(self, session, departments):
        stage = _stage(session, departments[1])
        outcome = reconciler.apply_task_update(session, _completed())
        session.commit()

        assert outcome == reconciler.UPDATED
        assert stage.status == "completed"
        assert stage.task_status == "completed"
        assert stage.rating == 85.0
        assert stage.evaluation_result == "Detailed findings"
        assert stage.evaluation_summary == "Solid structure"
        assert json.loads(stage.issues_json) == ["Pacing in act two"]
        assert json.loads(stage.suggestions_json) == ["Tighten the midpoint"]
        assert stage.evaluation_duration == 42.5
        assert stage.iteration_count == 2
        assert stage.agent_model == "eval-model-1"
        assert stage.last_evaluated_at is not None

    def test_second_application_is_a_no_op(self, session, departments):
        stage = _stage(session, departments[1])
        reconciler.apply_task_update(session, _completed(rating=85))
        session.commit()

        outcome = reconciler.apply_task_update(
            session, _completed(rating=40, evaluation_summary="Different"),
        )
        assert outcome == reconciler.ALREADY_TERMINAL
        assert stage.rating == 85
        assert stage.evaluation_summary == "Solid structure"

    def test_same_payload_twice_leaves_record_unchanged(self, session, departments):
        stage = _stage(session, departments[1])
        payload = _completed()
        reconciler.apply_task_update(session, payload)
        first_seen = (stage.rating, stage.evaluation_summary, stage.last_evaluated_at)
        reconciler.apply_task_update(session, payload)
        assert (stage.rating, stage.evaluation_summary, stage.last_evaluated_at) == first_seen

    def test_unknown_task_is_acknowledged(self, session, departments):
        assert reconciler.apply_task_update(session, _completed(task_id="ghost")) == reconciler.NOT_FOUND

    def test_failed_stores_error(self, session, departments):
        stage = _stage(session, departments[1])
        outcome = reconciler.apply_task_update(
            session, WebhookPayload(task_id="task-1", status="failed", error="Model timeout"),
        )
        assert outcome == reconciler.UPDATED
        assert stage.status == "failed"
        assert stage.evaluation_result == "Model timeout"

    def test_failed_after_completed_is_ignored(self, session, departments):
        stage = _stage(session, departments[1])
        reconciler.apply_task_update(session, _completed())
        reconciler.apply_task_update(session, WebhookPayload(task_id="task-1", status="failed", error="late"))
        assert stage.status == "completed"

    def test_completed_without_result_is_ignored(self, session, departments):
        stage = _stage(session, departments[1])
        outcome = reconciler.apply_task_update(session, WebhookPayload(task_id="task-1", status="completed"))
        assert outcome == reconciler.IGNORED
        assert stage.status == "in_progress"

    def test_progress_updates_task_status_only(self, session, departments):
        stage = _stage(session, departments[1], task_status="queued")
        outcome = reconciler.apply_task_update(session, WebhookPayload(task_id="task-1", status="running"))
        assert outcome == reconciler.PROGRESS
        assert stage.status == "in_progress"
        assert stage.task_status == "running"


class TestProjectScore:
    def test_score_written_to_every_project_record(self, session, departments):
        s1 = _stage(session, departments[1], task_id="t1")
        s2 = _stage(session, departments[2], task_id="t2")
        s3 = _stage(session, departments[3], task_id="t3")
        other = _stage(session, departments[1], task_id="t9", project_id="p2")

        reconciler.apply_task_update(session, _completed(task_id="t1", rating=80))
        reconciler.apply_task_update(session, _completed(task_id="t2", rating=90))
        session.commit()

        for stage in (s1, s2, s3):
            assert stage.readiness_score == 85
            assert stage.consistency_score == 90
            assert stage.recommendation == "ready"
        assert other.readiness_score is None

    def test_weights_come_from_departments(self, session, departments):
        departments[1].weight = 1
        departments[2].weight = 3
        _stage(session, departments[1], task_id="t1")
        _stage(session, departments[2], task_id="t2")
        reconciler.apply_task_update(session, _completed(task_id="t1", rating=80))
        reconciler.apply_task_update(session, _completed(task_id="t2", rating=90))

        summary = reconciler.refresh_project_score(session, "p1")
        assert summary.score == 88
        assert summary.completeness == 67


class TestSyncStage:
    @pytest.mark.asyncio
    async def test_applies_polled_result(self, session, departments, task_client):
        stage = _stage(session, departments[1])
        task_client.get_task_status.return_value = TaskStatusOut(
            task_id="task-1", status="completed",
            result=WebhookResult(rating=91, evaluation_summary="Ready to shoot"),
        )
        outcome = await reconciler.sync_stage(session, "p1", departments[1].id, task_client)
        assert outcome == reconciler.UPDATED
        assert stage.rating == 91

    @pytest.mark.asyncio
    async def test_terminal_stage_is_not_polled(self, session, departments, task_client):
        _stage(session, departments[1], status="completed", rating=88)
        outcome = await reconciler.sync_stage(session, "p1", departments[1].id, task_client)
        assert outcome == reconciler.ALREADY_TERMINAL
        task_client.get_task_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_stage(self, session, departments, task_client):
        with pytest.raises(NotFoundError):
            await reconciler.sync_stage(session, "p1", departments[1].id, task_client)

    @pytest.mark.asyncio
    async def test_status_fetch_failure_propagates(self, session, departments, task_client):
        stage = _stage(session, departments[1])
        task_client.get_task_status.side_effect = TaskServiceError("timeout", retryable=True)
        with pytest.raises(TaskServiceError):
            await reconciler.sync_stage(session, "p1", departments[1].id, task_client)
        assert stage.status == "in_progress"


class TestCancelAndSweep:
    @pytest.mark.asyncio
    async def test_cancel_marks_stage_failed(self, session, departments, task_client):
        stage = _stage(session, departments[1])
        await reconciler.cancel_evaluation(session, "p1", "task-1", task_client)
        task_client.cancel_task.assert_awaited_once_with("task-1")
        assert stage.status == "failed"
        assert stage.task_status == "cancelled"
        assert stage.evaluation_result == "Evaluation cancelled"

    @pytest.mark.asyncio
    async def test_cancel_wrong_project(self, session, departments, task_client):
        _stage(session, departments[1])
        with pytest.raises(NotFoundError):
            await reconciler.cancel_evaluation(session, "p2", "task-1", task_client)
        task_client.cancel_task.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_keeps_completed_result(self, session, departments, task_client):
        stage = _stage(session, departments[1], status="completed", rating=90)
        await reconciler.cancel_evaluation(session, "p1", "task-1", task_client)
        assert stage.status == "completed"
        assert stage.rating == 90

    def test_sweep_fails_only_stale_records(self, session, departments):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        stale = _stage(session, departments[1], task_id="old", submitted_at=now - timedelta(hours=2))
        fresh = _stage(session, departments[2], task_id="new", submitted_at=now - timedelta(minutes=5))
        done = _stage(session, departments[3], task_id="done", status="completed",
                      submitted_at=now - timedelta(days=1))

        swept = reconciler.sweep_stale(session, now=now, max_age_seconds=3600)

        assert swept == 1
        assert stale.status == "failed"
        assert stale.task_status == "stale"
        assert "old" in stale.evaluation_result
        assert fresh.status == "in_progress"
        assert done.status == "completed"

    def test_sweep_handles_naive_timestamps_from_sqlite(self, session, departments):
        _stage(session, departments[1], submitted_at=datetime(2026, 3, 1, 9, 0))
        session.expire_all()
        now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert reconciler.sweep_stale(session, now=now, max_age_seconds=3600) == 1


class TestScoreWhenStageLeavesCompleted:
    """A stage that stops being completed no longer counts toward the cached score."""

    def _two_completed(self, session, departments):
        s1 = _stage(session, departments[1], task_id="t1")
        s2 = _stage(session, departments[2], task_id="t2")
        reconciler.apply_task_update(session, _completed(task_id="t1", rating=90))
        reconciler.apply_task_update(session, _completed(task_id="t2", rating=70))
        session.commit()
        assert services.get_project_readiness(session, "p1")["readiness_score"] == 80
        # Re-run of department 2 picked up by a new task
        s2.status = "in_progress"
        s2.task_id = "t3"
        session.commit()
        return s1, s2

    def test_failed_rerun_drops_old_rating(self, session, departments):
        self._two_completed(session, departments)
        reconciler.apply_task_update(session, WebhookPayload(task_id="t3", status="failed", error="crashed"))
        session.commit()

        readiness = services.get_project_readiness(session, "p1")
        assert readiness["readiness_score"] == 90
        assert readiness["completeness"] == 33

    @pytest.mark.asyncio
    async def test_cancelled_rerun_drops_old_rating(self, session, departments, task_client):
        self._two_completed(session, departments)
        await reconciler.cancel_evaluation(session, "p1", "t3", task_client)
        session.commit()
        assert services.get_project_readiness(session, "p1")["readiness_score"] == 90

    def test_stale_rerun_drops_old_rating(self, session, departments):
        _, s2 = self._two_completed(session, departments)
        s2.submitted_at = datetime.now(UTC) - timedelta(hours=3)
        session.commit()

        assert reconciler.sweep_stale(session, max_age_seconds=3600) == 1
        session.commit()
        assert services.get_project_readiness(session, "p1")["readiness_score"] == 90

    def test_only_failure_leaves_no_score(self, session, departments):
        stage = _stage(session, departments[1], readiness_score=75, recommendation="needs_improvement")
        reconciler.apply_task_update(session, WebhookPayload(task_id="task-1", status="failed"))
        session.commit()
        assert stage.readiness_score == 0
        assert stage.recommendation == "not_ready"
