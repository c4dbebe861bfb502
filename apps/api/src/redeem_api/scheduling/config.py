"""TOML schedule loader for recurring maintenance jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomllib


@dataclass(slots=True)
class JobDefinition:
    """One cron-triggered job and its retry policy."""

    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retrying after ``attempt`` failed, without jitter."""

        delay = self.base_backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        return max(delay, 0.0)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]


def _number(payload: Mapping[str, Any], key: str, default: float, floor: float) -> float:
    try:
        value = float(payload.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(value, floor)


def _parse_job(key: str, payload: Mapping[str, Any]) -> JobDefinition | None:
    task = payload.get("task")
    cron = payload.get("cron")
    if not isinstance(task, str) or not isinstance(cron, str):
        return None
    kwargs = payload.get("kwargs")
    return JobDefinition(
        id=str(payload.get("id") or key),
        task=task,
        cron=cron,
        kwargs=dict(kwargs) if isinstance(kwargs, Mapping) else {},
        enabled=bool(payload.get("enabled", True)),
        max_attempts=int(_number(payload, "max_attempts", 1, 1)),
        base_backoff_seconds=_number(payload, "base_backoff_seconds", 5.0, 0.0),
        backoff_multiplier=_number(payload, "backoff_multiplier", 2.0, 1.0),
        max_backoff_seconds=_number(payload, "max_backoff_seconds", 60.0, 0.0),
        jitter_seconds=_number(payload, "jitter_seconds", 1.0, 0.0),
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Parse ``[jobs.<id>]`` tables; entries missing a task or cron are skipped."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    entries = data.get("jobs", {})
    jobs = [
        job
        for key, payload in entries.items()
        if isinstance(payload, Mapping) and (job := _parse_job(key, payload)) is not None
    ]
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions"]
