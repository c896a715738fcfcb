from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from config import get_settings
from models import NotificationKind
from money import format_amount
from notifications import NotificationDispatcher
from periods import Period, local_now, month_period
from store import LedgerStore

logger = logging.getLogger(__name__)

_POLL_SECS = 0.05


class SummarizerState(str, Enum):
    idle = "idle"
    running = "running"


@dataclass
class SummaryRun:
    started_at: datetime
    period_key: str
    summarized: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    skipped: bool = False
    cancelled: bool = False


def summary_message(total_cents: int, period: Period) -> str:
    month_label = period.start.strftime("%B %Y")
    return (
        f"You have spent a total of {format_amount(total_cents)} in {month_label} "
        f"({period.key})."
    )


class PeriodicSummarizer:
    """Sends every user a month-to-date spending summary.

    Users are processed on a small thread pool, each with its own timeout, so
    one slow or failing user never stops the run. Runs are not remembered:
    triggering twice in a month summarizes twice.
    """

    def __init__(
        self,
        store: LedgerStore,
        dispatcher: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = local_now,
        max_workers: Optional[int] = None,
        user_timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.max_workers = max_workers or settings.summary_workers
        self.user_timeout = (
            user_timeout
            if user_timeout is not None
            else settings.summary_user_timeout_secs
        )
        self._state = SummarizerState.idle
        self._state_lock = threading.Lock()

    @property
    def state(self) -> SummarizerState:
        return self._state

    def run(
        self,
        cancel: Optional[threading.Event] = None,
        *,
        source: str = "manual",
    ) -> SummaryRun:
        now = self.clock()
        period = month_period(now.date())
        summary = SummaryRun(started_at=now, period_key=period.key)

        with self._state_lock:
            if self._state == SummarizerState.running:
                logger.info(f"summary_run_skipped: source={source} reason=running")
                summary.skipped = True
                return summary
            self._state = SummarizerState.running

        try:
            self._run_users(summary, period, now, cancel)
        finally:
            with self._state_lock:
                self._state = SummarizerState.idle

        logger.info(
            f"summary_run: source={source} period={period.key} "
            f"summarized={len(summary.summarized)} failed={len(summary.failures)}"
        )
        return summary

    def _run_users(
        self,
        summary: SummaryRun,
        period: Period,
        now: datetime,
        cancel: Optional[threading.Event],
    ) -> None:
        if cancel is not None and cancel.is_set():
            summary.cancelled = True
            return
        users = self.store.list_users()
        started: dict[str, float] = {}
        abandoned: dict[str, threading.Event] = {u: threading.Event() for u in users}

        def work(user_id: str) -> None:
            started[user_id] = time.monotonic()
            self._summarize_user(user_id, period, now, abandoned[user_id])

        executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="summary"
        )
        try:
            pending: dict[Future, str] = {
                executor.submit(work, user_id): user_id for user_id in users
            }
            poll = min(self.user_timeout, _POLL_SECS) or _POLL_SECS
            while pending:
                if cancel is not None and cancel.is_set():
                    for future in pending:
                        future.cancel()
                    summary.cancelled = True
                    break
                done, _ = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)
                for future in done:
                    user_id = pending.pop(future)
                    exc = future.exception()
                    if exc is None:
                        summary.summarized.append(user_id)
                    else:
                        summary.failures[user_id] = str(exc) or exc.__class__.__name__
                        logger.error(
                            f"summary_user_failed: user={user_id}", exc_info=exc
                        )
                # a user's clock starts when its own work starts, not while queued
                checked_at = time.monotonic()
                for future, user_id in list(pending.items()):
                    began = started.get(user_id)
                    if began is not None and checked_at - began > self.user_timeout:
                        del pending[future]
                        abandoned[user_id].set()
                        summary.failures[user_id] = "timed out"
                        logger.warning(f"summary_user_timeout: user={user_id}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        summary.summarized.sort()

    def _summarize_user(
        self,
        user_id: str,
        period: Period,
        now: datetime,
        abandoned: Optional[threading.Event] = None,
    ) -> None:
        # entries up to ``now`` only, so a sync committing concurrently with a
        # later timestamp is not half counted
        total = self.store.sum_for_user(user_id, period.start_at, now)
        if abandoned is not None and abandoned.is_set():
            return
        self.dispatcher.enqueue(
            user_id, summary_message(total, period), NotificationKind.monthly_summary
        )
