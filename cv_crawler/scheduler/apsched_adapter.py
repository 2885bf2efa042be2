"""APScheduler wrapper exposing higher level helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import ScheduleConfig, ScheduleType


class APSchedulerAdapter:
    """Manage APScheduler entries for recurring jobs and maintenance tasks."""

    def __init__(self) -> None:
        self.scheduler = BackgroundScheduler(timezone=timezone.utc)
        self.logger = structlog.get_logger("cv_crawler.scheduler").bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_job(self, job_id: str, schedule: ScheduleConfig, callback: Callable[[str], Any]) -> str:
        """Fire ``callback(job_id)`` on the job template's schedule."""

        entry_id = f"job::{job_id}"
        self.scheduler.add_job(
            callback, trigger=self._build_trigger(schedule), id=entry_id, args=[job_id], replace_existing=True
        )
        self.logger.info("job_scheduled", job_id=job_id, schedule=schedule.model_dump(mode="json"))
        return entry_id

    def schedule_task(self, name: str, schedule: ScheduleConfig, callback: Callable[[], Any]) -> str:
        entry_id = f"task::{name}"
        self.scheduler.add_job(
            callback, trigger=self._build_trigger(schedule), id=entry_id, args=[], replace_existing=True
        )
        self.logger.info("task_scheduled", task=name, schedule=schedule.model_dump(mode="json"))
        return entry_id

    def schedule_interval(self, name: str, seconds: float, callback: Callable[[], Any]) -> str:
        return self.schedule_task(name, ScheduleConfig(type=ScheduleType.INTERVAL, value=seconds), callback)

    def remove(self, entry_id: str) -> bool:
        try:
            self.scheduler.remove_job(entry_id)
        except JobLookupError:
            self.logger.warning("job_remove_failed", entry=entry_id)
            return False
        return True

    def _build_trigger(self, schedule: ScheduleConfig):
        if schedule.type is ScheduleType.CRON:
            return CronTrigger.from_crontab(str(schedule.value), timezone=timezone.utc)
        if schedule.type is ScheduleType.INTERVAL:
            if isinstance(schedule.value, (int, float)):
                return IntervalTrigger(seconds=float(schedule.value))
            if isinstance(schedule.value, dict):
                return IntervalTrigger(**schedule.value)
            raise ValueError("Interval schedule requires seconds or kwargs dict")
        if schedule.type is ScheduleType.ONCE:
            if schedule.value:
                run_date = datetime.fromisoformat(str(schedule.value))
                if run_date.tzinfo is None:
                    run_date = run_date.replace(tzinfo=timezone.utc)
            else:
                run_date = datetime.now(timezone.utc)
            return DateTrigger(run_date=run_date)
        raise ValueError(f"Unknown schedule type: {schedule.type}")

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["APSchedulerAdapter"]
