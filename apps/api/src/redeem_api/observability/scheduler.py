"""Run metrics for scheduled maintenance jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict, List

from redeem_api.core.clock import utcnow


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobRunState:
    job_id: str
    task: str
    counters: Dict[str, int] = field(
        default_factory=lambda: {"runs": 0, "success": 0, "run_failures": 0, "attempt_failures": 0, "retries": 0}
    )
    runtime_seconds: float = 0.0
    consecutive_failures: int = 0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": {**self.counters, "consecutive_failures": self.consecutive_failures},
            "runtime_seconds": self.runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
        }


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, Dict[str, object]]
    failing_jobs: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {"totals": dict(self.totals), "jobs": dict(self.jobs), "failing_jobs": list(self.failing_jobs)}


class SchedulerObservabilityStore:
    """Tracks dispatches, retries and outcomes per scheduled job."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobRunState] = {}

    def _state(self, job_id: str, task: str) -> JobRunState:
        state = self._jobs.get(job_id)
        if state is None:
            state = self._jobs[job_id] = JobRunState(job_id=job_id, task=task)
        state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["runs"] += 1
            state.last_started_at = utcnow()
            state.last_attempts = 0

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["attempt_failures"] += 1
            state.last_error = error
            state.last_error_at = utcnow()
            state.last_attempts = attempts

    def record_retry(self, job_id: str, task: str, *, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["retries"] += 1
            state.last_attempts = attempts

    def record_success(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["success"] += 1
            state.runtime_seconds += runtime_seconds
            state.last_success_at = utcnow()
            state.last_attempts = attempts
            state.consecutive_failures = 0
            state.last_error = None

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["run_failures"] += 1
            state.runtime_seconds += runtime_seconds
            state.last_attempts = attempts
            state.consecutive_failures += 1

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            totals: Dict[str, int] = {}
            for state in self._jobs.values():
                for key, value in state.counters.items():
                    totals[key] = totals.get(key, 0) + value
            jobs = {job_id: state.as_dict() for job_id, state in self._jobs.items()}
            failing = sorted(job_id for job_id, state in self._jobs.items() if state.consecutive_failures > 0)
        return SchedulerSnapshot(totals=totals, jobs=jobs, failing_jobs=failing)

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


_SCHEDULER_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = ["SchedulerObservabilityStore", "SchedulerSnapshot", "get_scheduler_store"]
