"""Interval scheduling for the intake scanner.

The FastAPI lifespan owns one ``IntakeScheduler``; nothing else starts
scans in the background. Each run builds its own scanner (and so its own
database session) through ``scanner_factory``.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.logging import get_logger
from app.schemas.candidate import ScanResult
from app.services.ingestion.scanner import IntakeScanner

logger = get_logger(__name__)

SCAN_JOB_ID = "intake_scan"

ScannerFactory = Callable[[], AbstractContextManager[IntakeScanner]]


class IntakeScheduler:
    """Runs one scan cycle every ``interval_minutes``.

    ``max_instances=1`` keeps cycles from overlapping; ``coalesce`` folds
    runs missed while the process was busy into a single one.
    """

    def __init__(self, scanner_factory: ScannerFactory, interval_minutes: int = 30) -> None:
        self.scanner_factory = scanner_factory
        self.interval_minutes = interval_minutes
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(max_workers=1)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 120,
            },
            timezone="UTC",
        )

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=SCAN_JOB_ID,
            name="Scan feed for payment commands",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Intake scheduler started: every %d minutes", self.interval_minutes)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Intake scheduler stopped")

    def run_once(self) -> Optional[ScanResult]:
        """One cycle. Errors are logged so the next interval still runs."""
        try:
            with self.scanner_factory() as scanner:
                return scanner.run_cycle()
        except Exception:
            logger.exception("Scheduled scan cycle crashed")
            return None
