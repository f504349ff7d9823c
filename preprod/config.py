from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

PACKAGE_DIR = Path(__file__).parent

# Registry used by db.py to seed the departments table.
# Thresholds and ordering follow the production pipeline: story first, production last.
DEFAULT_DEPARTMENTS: list[dict[str, Any]] = [
    {
        "number": 1, "slug": "story", "name": "Story Department", "threshold": 85,
        "description": "Narrative structure, plot, themes, and story arcs.",
    },
    {
        "number": 2, "slug": "character", "name": "Character Department", "threshold": 85,
        "description": "Character profiles, development arcs, and relationships.",
    },
    {
        "number": 3, "slug": "visual", "name": "Visual Department", "threshold": 80,
        "description": "Art direction, cinematography, and visual style.",
    },
    {
        "number": 4, "slug": "video", "name": "Video Department", "threshold": 80,
        "description": "Video editing and post-production.",
    },
    {
        "number": 5, "slug": "audio", "name": "Audio Department", "threshold": 80,
        "description": "Sound design, music, and voice.",
    },
    {
        "number": 6, "slug": "production", "name": "Production Department", "threshold": 75,
        "description": "Scheduling, budgeting, and coordination.",
    },
]


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _env_float(key: str, default: float) -> float:
    raw = _env(key)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(_env("PREPROD_DB_PATH") or PACKAGE_DIR / "data" / "preprod.db")
    )

    tasks_api_url: str = Field(default_factory=lambda: _env("TASKS_API_URL", "http://localhost:8001"))
    tasks_api_key: str = Field(default_factory=lambda: _env("TASK_API_KEY"))
    app_url: str = Field(default_factory=lambda: _env("APP_URL", "http://localhost:8000"))

    brain_api_url: str = Field(default_factory=lambda: _env("BRAIN_API_URL", "http://localhost:8002"))
    brain_api_key: str = Field(default_factory=lambda: _env("BRAIN_API_KEY"))

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))

    task_timeout_seconds: float = Field(default_factory=lambda: _env_float("TASK_TIMEOUT_SECONDS", 60.0))
    search_timeout_seconds: float = Field(default_factory=lambda: _env_float("SEARCH_TIMEOUT_SECONDS", 30.0))
    llm_timeout_seconds: float = Field(default_factory=lambda: _env_float("LLM_TIMEOUT_SECONDS", 60.0))
    fetch_timeout_seconds: float = 15.0

    poll_interval_seconds: float = Field(default_factory=lambda: _env_float("POLL_INTERVAL_SECONDS", 30.0))
    # An in_progress stage older than this is considered abandoned.
    stale_after_seconds: float = Field(default_factory=lambda: _env_float("STALE_AFTER_SECONDS", 3600.0))

    default_threshold: int = 80
    default_project_context: str = "Movie production project"

    departments_file: Path | None = Field(
        default_factory=lambda: Path(_env("PREPROD_DEPARTMENTS_FILE")) if _env("PREPROD_DEPARTMENTS_FILE") else None
    )

    @property
    def callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/webhooks/evaluation-complete"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_departments(self) -> list[dict[str, Any]]:
        """Department definitions from the YAML file, or the built-in defaults."""
        if self.departments_file is None:
            return [dict(d) for d in DEFAULT_DEPARTMENTS]
        raw = self.load_yaml(self.departments_file).get("departments", [])
        if not isinstance(raw, list) or not raw:
            return [dict(d) for d in DEFAULT_DEPARTMENTS]
        return [d for d in raw if isinstance(d, dict) and "number" in d and "slug" in d]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
