"""
Retry scheduling for chain steps.

A step that fails transiently gets a ChainScheduledJob carrying the time it
becomes due. Pollers select due, unclaimed jobs and claim each one through an
atomic conditional update in the repository, so a job is handed to at most one
poller even when several run side by side. The claimed job's step is then
re-dispatched through a StepResumer.
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from eventchain.application.port import ScheduledJobRepository, StepResumer
from eventchain.domain.entity import ChainScheduledJob
from eventchain.domain.service import utcnow
from eventchain.domain.value_object import DispatchStatus, EngineOptions

logger = logging.getLogger("eventchain.scheduler")


class RetryScheduler:
    """Maintains due-dates for steps awaiting retry."""

    def __init__(
        self,
        jobs: ScheduledJobRepository,
        options: EngineOptions | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.options = options if options is not None else EngineOptions()
        self.clock = clock

    def schedule(self, step_execution_id: str, execution_id: str, not_before: datetime) -> ChainScheduledJob:
        """
        Creates a job for the step, or re-arms the step's live job.

        :param step_execution_id: The step to re-dispatch
        :type step_execution_id: str
        :param execution_id: The execution owning the step
        :type execution_id: str
        :param not_before: When the job becomes due
        :type not_before: datetime
        :returns: The stored job
        :rtype: ChainScheduledJob
        """
        job = self.jobs.live_for_step(step_execution_id)
        if job is None:
            job = ChainScheduledJob(
                step_execution_id=step_execution_id,
                chain_execution_id=execution_id,
                scheduled_at=not_before,
            )
            self.jobs.add(job)
        else:
            job.scheduled_at = not_before
            job.picked_up_at = None
            job.retry_count += 1
            self.jobs.update(job)
        logger.info(
            "Scheduled retry for step %s of execution %s at %s",
            step_execution_id,
            execution_id,
            not_before.isoformat(),
        )
        return job

    def claim_due(self, now: datetime | None = None) -> list[ChainScheduledJob]:
        """
        Claims every due job this caller can win.

        :param now: Reference time; defaults to the scheduler's clock
        :type now: datetime | None
        :returns: Jobs claimed by this caller
        :rtype: list[ChainScheduledJob]
        """
        now = now if now is not None else self.clock()
        claimed = []
        for job in self.jobs.due(now, self.options.poll_batch_size):
            if self.jobs.claim(job.id, now):
                job.picked_up_at = now
                claimed.append(job)
            else:
                logger.debug("Job %s was claimed by another worker", job.id)
        return claimed

    def poll_once(self, resumer: StepResumer, now: datetime | None = None) -> list[ChainScheduledJob]:
        """
        Claims due jobs and re-dispatches their steps.

        :param resumer: Re-dispatches a step by id
        :type resumer: StepResumer
        :param now: Reference time; defaults to the scheduler's clock
        :type now: datetime | None
        :returns: The jobs this call processed
        :rtype: list[ChainScheduledJob]
        """
        processed = []
        for job in self.claim_due(now):
            self._process(job, resumer)
            processed.append(job)
        return processed

    def reset_stale(self, now: datetime | None = None) -> int:
        """
        Releases claims held longer than ``claim_timeout``, e.g. by a crashed worker.

        :param now: Reference time; defaults to the scheduler's clock
        :type now: datetime | None
        :returns: Number of claims released
        :rtype: int
        """
        now = now if now is not None else self.clock()
        cutoff = now - timedelta(seconds=self.options.claim_timeout)
        released = 0
        for job in self.jobs.claimed_before(cutoff):
            logger.warning("Releasing stale claim on job %s (picked up at %s)", job.id, job.picked_up_at)
            job.picked_up_at = None
            self.jobs.update(job)
            released += 1
        return released

    def run(self, resumer: StepResumer, stop_event: threading.Event) -> None:
        """Polls until ``stop_event`` is set."""
        logger.info("Retry poller started (interval=%ss)", self.options.poll_interval)
        while not stop_event.is_set():
            try:
                self.reset_stale()
                self.poll_once(resumer)
            except Exception:
                logger.exception("Retry poll iteration failed")
            stop_event.wait(self.options.poll_interval)
        logger.info("Retry poller stopped")

    def _process(self, job: ChainScheduledJob, resumer: StepResumer) -> None:
        try:
            outcome = resumer.resume_step(job.step_execution_id)
        except Exception as e:
            logger.exception("Re-dispatch of step %s failed", job.step_execution_id)
            current = self.jobs.get(job.id)
            current.retry_count += 1
            current.error_message = str(e)
            current.picked_up_at = None
            self.jobs.update(current)
            return

        if outcome.status == DispatchStatus.RETRY_SCHEDULED:
            # schedule() already re-armed this job for the next attempt
            return
        current = self.jobs.get(job.id)
        if outcome.status == DispatchStatus.FAILED:
            current.failed_at = self.clock()
            current.error_message = outcome.error
        else:
            current.completed_at = self.clock()
        self.jobs.update(current)
