"""APScheduler runtime for recurring maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from redeem_api.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(path: str) -> JobCallable:
    """Import ``package.module.function`` and require an async function."""

    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {path} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {path} must be an async function")
    return func


class JobScheduler:
    """Register cron jobs from the schedule file and run them with retries."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            if not job.enabled:
                logger.info("Skipping disabled job", job_id=job.id, task=job.task)
                continue
            scheduler.add_job(
                self.build_runner(resolve_task(job.task), job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
            )
            logger.info("Registered scheduled job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Job scheduler started", jobs=len(scheduler.get_jobs()))

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Job scheduler stopped")

    def build_runner(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[bool]]:
        """Wrap a job function with retry, backoff and run metrics."""

        async def _runner() -> bool:
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()
            attempts = max(job.max_attempts, 1)

            for attempt in range(1, attempts + 1):
                try:
                    await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=str(exc))
                    if attempt >= attempts:
                        self._observability.record_run_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                        )
                        logger.exception("Scheduled job failed after retries", job_id=job.id, attempts=attempt)
                        return False
                    delay = job.retry_delay(attempt)
                    if job.jitter_seconds:
                        delay += random.uniform(0, job.jitter_seconds)
                    self._observability.record_retry(job.id, job.task, attempts=attempt + 1)
                    logger.warning("Scheduled job retrying", job_id=job.id, attempt=attempt + 1, delay_seconds=delay)
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime = time.perf_counter() - started_at
                self._observability.record_success(job.id, job.task, runtime_seconds=runtime, attempts=attempt)
                logger.info("Scheduled job completed", job_id=job.id, attempts=attempt, runtime_seconds=runtime)
                return True
            return False

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "max_attempts": job.max_attempts,
                    "metrics": snapshot.jobs.get(job.id),
                }
                for job in jobs
            ],
        }


__all__ = ["JobScheduler", "resolve_task"]
