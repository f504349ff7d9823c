"""Background poll loop: reconcile in-progress evaluations for subscribed projects.

The webhook is the primary completion path; this loop is a fallback for
dropped webhooks. Skipping or delaying a cycle is always safe.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractContextManager
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from preprod.errors import TaskServiceError
from preprod.models import STATUS_IN_PROGRESS, DepartmentStageRecord
from preprod.reconciler import UPDATED, apply_task_update, sweep_stale
from preprod.schemas import WebhookPayload
from preprod.task_service import TaskServiceClient

log = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


class PollScheduler:
    def __init__(
        self,
        interval: float,
        task_client_factory: Callable[[], TaskServiceClient],
        session_factory: SessionFactory,
    ):
        self.interval = interval
        self._task_client_factory = task_client_factory
        self._session_factory = session_factory
        self._projects: set[str] = set()
        self._task: asyncio.Task | None = None

    # -- subscriptions ---------------------------------------------------------

    @property
    def projects(self) -> frozenset[str]:
        return frozenset(self._projects)

    def subscribe(self, project_id: str) -> None:
        if project_id not in self._projects:
            self._projects.add(project_id)
            log.info("Polling enabled for project %s", project_id)

    def unsubscribe(self, project_id: str) -> None:
        if project_id in self._projects:
            self._projects.discard(project_id)
            log.info("Polling disabled for project %s", project_id)

    # -- lifecycle -------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="preprod-poll-scheduler")
        log.info("Poll scheduler started (every %ss)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("Poll scheduler stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception:
                log.exception("Error in poll cycle")

    # -- one cycle -------------------------------------------------------------

    async def tick(self) -> None:
        for project_id in sorted(self._projects):
            try:
                await self.poll_project(project_id)
            except Exception:
                log.exception("Polling failed for project %s", project_id)
        with self._session_factory() as session:
            if sweep_stale(session):
                session.commit()

    async def poll_project(self, project_id: str) -> int:
        """Check every in-progress stage of *project_id*. Returns how many reached a terminal state."""
        client = self._task_client_factory()
        updated = 0
        with self._session_factory() as session:
            stages = session.execute(
                select(DepartmentStageRecord).where(
                    DepartmentStageRecord.project_id == project_id,
                    DepartmentStageRecord.status == STATUS_IN_PROGRESS,
                    DepartmentStageRecord.task_id.is_not(None),
                )
            ).scalars().all()

            for stage in stages:
                try:
                    status = await client.get_task_status(stage.task_id)
                except TaskServiceError as exc:
                    log.warning("Status check failed for task %s: %s", stage.task_id, exc)
                    continue
                outcome = apply_task_update(session, WebhookPayload(
                    task_id=status.task_id,
                    status=status.status,
                    project_id=project_id,
                    result=status.result,
                    error=status.error,
                ))
                if outcome == UPDATED:
                    updated += 1
            session.commit()

        if updated:
            log.info("Poll reconciled %d stage(s) for project %s", updated, project_id)
        return updated
