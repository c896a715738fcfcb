import logging
import threading
from typing import Callable, Optional, Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from summaries import PeriodicSummarizer

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

TickCallback = Callable[[threading.Event], None]


class Ticker(Protocol):
    def on_tick(self, callback: TickCallback) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class IntervalTicker:
    """Calls registered callbacks on a fixed interval, starting immediately.

    Each callback receives the ticker's cancellation event, which is set when
    the ticker stops so long-running work can bail out.
    """

    def __init__(
        self,
        hours: float,
        *,
        job_id: str = "interval_tick",
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        settings = get_settings()
        self.hours = hours
        self.job_id = job_id
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.timezone)
        self.cancelled = threading.Event()
        self._callbacks: list[TickCallback] = []

    def on_tick(self, callback: TickCallback) -> None:
        self._callbacks.append(callback)

    def tick(self) -> None:
        for callback in list(self._callbacks):
            if self.cancelled.is_set():
                return
            try:
                callback(self.cancelled)
            except Exception:
                logger.exception(f"tick_failed: job={self.job_id}")

    def start(self) -> None:
        self.cancelled.clear()
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(hours=self.hours),
            id=self.job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(f"ticker_started: job={self.job_id} every_hours={self.hours}")
        threading.Thread(
            target=self.tick, name=f"{self.job_id}-startup", daemon=True
        ).start()

    def stop(self) -> None:
        self.cancelled.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info(f"ticker_stopped: job={self.job_id}")


class SchedulerManager:
    def __init__(
        self, summarizer: PeriodicSummarizer, ticker: Optional[Ticker] = None
    ) -> None:
        settings = get_settings()
        self.summarizer = summarizer
        self.ticker = ticker or IntervalTicker(
            settings.summary_interval_hours, job_id="monthly_summary"
        )
        self.ticker.on_tick(self._run_job)

    def _run_job(self, cancel: threading.Event) -> None:
        logger.info("scheduler_run: job=monthly_summary")
        run = self.summarizer.run(cancel, source="interval")
        logger.info(
            f"scheduler_run: job=monthly_summary summarized={len(run.summarized)} "
            f"failed={len(run.failures)} skipped={run.skipped}"
        )

    def start(self) -> None:
        self.ticker.start()

    def stop(self) -> None:
        self.ticker.stop()
