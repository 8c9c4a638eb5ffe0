"""Periodic jobs of the sync service: the scheduled sync sweep and retention purge.

The scheduler is an asyncio loop started from the app lifespan. Job state
lives in memory only; after a restart every job waits out its initial delay
again.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from possync.core.config import settings
from possync.db.session import SessionLocal
from possync.models.offline_queue import SyncTrigger

logger = logging.getLogger(__name__)

AUTO_SYNC_JOB = "offline_auto_sync"
RETENTION_JOB = "offline_retention_purge"


@dataclass
class ScheduledJob:
    func: Callable
    interval: timedelta
    next_run: datetime
    last_run: Optional[datetime] = None
    run_count: int = 0
    last_error: Optional[str] = None

    def status(self) -> Dict[str, Any]:
        return {
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat(),
            "interval_seconds": int(self.interval.total_seconds()),
            "run_count": self.run_count,
            "last_error": self.last_error,
        }


@dataclass
class TaskScheduler:
    """Runs registered jobs at fixed intervals.

    Blocking jobs run in a worker thread so a long sync sweep never stalls
    request handling.
    """

    tick_seconds: float = 5
    _jobs: Dict[str, ScheduledJob] = field(default_factory=dict)
    _running: bool = False
    _handle: Optional[asyncio.Task] = None

    async def start(self):
        self._running = True
        logger.info(f"Task scheduler started with {len(self._jobs)} job(s)")
        while self._running:
            await self.run_due()
            await asyncio.sleep(self.tick_seconds)

    async def run_due(self):
        now = datetime.now(timezone.utc)
        for name, job in list(self._jobs.items()):
            if now < job.next_run:
                continue
            try:
                if asyncio.iscoroutinefunction(job.func):
                    await job.func()
                else:
                    await asyncio.to_thread(job.func)
            except Exception as e:
                job.last_error = str(e)
                logger.error(f"Scheduled job '{name}' failed: {e}")
            else:
                job.last_run = now
                job.run_count += 1
                job.last_error = None
            job.next_run = now + job.interval

    def launch(self) -> asyncio.Task:
        self._handle = asyncio.create_task(self.start())
        return self._handle

    def stop(self):
        self._running = False
        if self._handle:
            self._handle.cancel()

    def add_task(self, name: str, func: Callable, interval_seconds: int, initial_delay_seconds: int = 10):
        self._jobs[name] = ScheduledJob(
            func=func,
            interval=timedelta(seconds=interval_seconds),
            next_run=datetime.now(timezone.utc) + timedelta(seconds=initial_delay_seconds),
        )
        logger.info(f"Scheduled job '{name}' every {interval_seconds}s")

    def get_status(self) -> Dict[str, Any]:
        return {name: job.status() for name, job in self._jobs.items()}


def run_scheduled_sync(session_factory: Callable = SessionLocal) -> int:
    """Run one scheduled session per device with due work; return how many ran.

    A database error on one device, raw or surfaced as SyncSessionError, is
    logged and the sweep moves on.
    """
    from possync.services.offline.exceptions import SyncSessionError
    from possync.services.offline.sync_orchestrator import SyncOptions, SyncOrchestrator

    db = session_factory()
    try:
        orchestrator = SyncOrchestrator(db)
        completed = 0
        for device_id in orchestrator.store.devices_with_due_work():
            try:
                orchestrator.run_session(
                    device_id,
                    SyncOptions(trigger=SyncTrigger.SCHEDULED.value, initiated_by_name="scheduler"),
                )
            except (SQLAlchemyError, SyncSessionError):
                db.rollback()
                logger.exception(f"Scheduled sync failed for {device_id}", extra={"device_id": device_id})
                continue
            completed += 1
        return completed
    finally:
        db.close()


def purge_expired_items(session_factory: Callable = SessionLocal) -> int:
    from possync.services.offline.queue_store import QueueStore

    db = session_factory()
    try:
        return QueueStore(db).purge_synced(settings.offline_retention_days)
    finally:
        db.close()


def configure_scheduler(target: TaskScheduler) -> None:
    if settings.offline_auto_sync_interval_seconds > 0:
        target.add_task(AUTO_SYNC_JOB, run_scheduled_sync, settings.offline_auto_sync_interval_seconds)
    if settings.offline_retention_days > 0:
        target.add_task(RETENTION_JOB, purge_expired_items, 24 * 3600, initial_delay_seconds=300)


scheduler = TaskScheduler()
