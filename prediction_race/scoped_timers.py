import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

JobFunc = Callable[..., Awaitable[None]]


class TimerScope:
    """Timers owned by one phase of one round.

    Jobs are coroutine functions so the AsyncIOScheduler runs them on the event
    loop. Every job registered through a scope is removed by ``cancel_all``,
    which the controller calls whenever the phase or the round changes.
    """

    def __init__(self, scheduler: BaseScheduler, name: str):
        self.scheduler = scheduler
        self.name = name
        self.job_ids: Set[str] = set()
        self.closed = False

    def _job_id(self, key: str) -> str:
        return f"{self.name}:{key}"

    def every(self, key: str, seconds: float, func: JobFunc, *args) -> str:
        """Run ``func`` every ``seconds``; a job with the same key is replaced

        Args:
            key (str): Job name inside this scope
            seconds (float): Interval between runs
            func (JobFunc): Coroutine function to run

        Returns:
            str: Scheduler job id
        """
        if self.closed:
            raise RuntimeError(f"timer scope {self.name} is closed")
        job_id = self._job_id(key)
        self.scheduler.add_job(
            func,
            "interval",
            seconds=seconds,
            args=list(args),
            id=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.job_ids.add(job_id)
        return job_id

    def after(self, key: str, seconds: float, func: JobFunc, *args) -> str:
        """Run ``func`` once, ``seconds`` from now; a job with the same key is replaced"""
        if self.closed:
            raise RuntimeError(f"timer scope {self.name} is closed")
        job_id = self._job_id(key)
        self.scheduler.add_job(
            func,
            "date",
            run_date=datetime.now() + timedelta(seconds=seconds),
            args=list(args),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self.job_ids.add(job_id)
        return job_id

    def cancel(self, key: str) -> None:
        job_id = self._job_id(key)
        self._remove(job_id)
        self.job_ids.discard(job_id)

    def cancel_all(self) -> None:
        for job_id in list(self.job_ids):
            self._remove(job_id)
        self.job_ids.clear()
        self.closed = True

    def _remove(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            # One-shot jobs remove themselves once they have run.
            logging.debug(f"Timer already gone: {job_id}")
