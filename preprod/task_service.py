"""Client for the external long-running evaluation task service.

Submit / status / cancel contract only; the executor itself lives elsewhere.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from preprod.config import get_settings
from preprod.errors import TaskServiceError
from preprod.schemas import TaskStatusOut

log = logging.getLogger(__name__)

EVALUATE_TASK_TYPE = "evaluate_department"


@dataclass
class EvaluationTask:
    """Everything the task service needs to evaluate one department."""
    project_id: str
    department_slug: str
    department_number: int
    department_id: int
    gather_data: list[dict[str, Any]]
    previous_evaluations: list[dict[str, Any]]
    threshold: int
    user_id: str | None = None


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data.get("detail") or resp.reason_phrase)
    return resp.reason_phrase


class TaskServiceClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        callback_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.tasks_api_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.tasks_api_key
        self.timeout = timeout or settings.task_timeout_seconds
        self.callback_url = callback_url or settings.callback_url
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers={"X-API-Key": self._api_key},
            transport=self._transport,
        )

    async def submit_evaluation(self, task: EvaluationTask) -> dict[str, Any]:
        """Submit a department evaluation. Returns ``{task_id, status}``."""
        body = {
            "project_id": task.project_id,
            "task_type": EVALUATE_TASK_TYPE,
            "task_data": {
                "department_slug": task.department_slug,
                "department_number": task.department_number,
                "gather_data": task.gather_data,
                "previous_evaluations": task.previous_evaluations,
                "threshold": task.threshold,
            },
            "priority": 1,
            "callback_url": self.callback_url,
            "metadata": {"user_id": task.user_id, "department_id": task.department_id},
        }
        log.info("Submitting evaluation: project=%s department=%s items=%d",
                 task.project_id, task.department_slug, len(task.gather_data))
        try:
            async with self._client() as client:
                resp = await client.post("/api/v1/tasks/submit", json=body)
        except httpx.HTTPError as exc:
            raise TaskServiceError(f"Task submission failed: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            raise TaskServiceError(
                f"Task submission failed: {_error_message(resp)}",
                retryable=resp.status_code >= 500, status_code=resp.status_code,
            )
        data = resp.json()
        if not isinstance(data, dict) or not data.get("task_id"):
            raise TaskServiceError("Task submission failed: no task_id in response")
        return data

    async def get_task_status(self, task_id: str) -> TaskStatusOut:
        try:
            async with self._client() as client:
                resp = await client.get(f"/api/v1/tasks/{task_id}/status")
        except httpx.HTTPError as exc:
            raise TaskServiceError(f"Status check failed for {task_id}: {exc}", retryable=True) from exc

        if resp.status_code == 404:
            raise TaskServiceError(f"Task {task_id} not found", status_code=404)
        if resp.status_code >= 400:
            raise TaskServiceError(
                f"Status check failed for {task_id}: {_error_message(resp)}",
                retryable=resp.status_code >= 500, status_code=resp.status_code,
            )
        data = resp.json()
        data.setdefault("task_id", task_id)
        return TaskStatusOut.model_validate(data)

    async def cancel_task(self, task_id: str) -> None:
        """Cancel a running or queued task. An unknown task counts as cancelled."""
        try:
            async with self._client() as client:
                resp = await client.delete(f"/api/v1/tasks/{task_id}/cancel")
        except httpx.HTTPError as exc:
            raise TaskServiceError(f"Cancel failed for {task_id}: {exc}", retryable=True) from exc
        if resp.status_code >= 400 and resp.status_code != 404:
            raise TaskServiceError(
                f"Cancel failed for {task_id}: {_error_message(resp)}",
                retryable=resp.status_code >= 500, status_code=resp.status_code,
            )

    async def check_health(self) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.get("/api/v1/health")
        except httpx.HTTPError as exc:
            raise TaskServiceError(f"Health check failed: {exc}", retryable=True) from exc
        if resp.status_code >= 400:
            raise TaskServiceError(f"Health check failed: {resp.reason_phrase}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            return {"status": resp.text.strip() or "ok"}
        return data if isinstance(data, dict) else {"status": data}
