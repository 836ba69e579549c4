"""Time-boxed transcription runner driven by the scheduled worker trigger."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from config import settings
from services.deadlines import Deadline
from services.transcription import (
    FAILURE_INPUT,
    TranscriptionFailure,
    TranscriptionPipeline,
    TranscriptionResult,
)
from services.transcription_queue import QueuedJob, TranscriptionQueue, build_transcription_queue
from services.transcription_records import (
    mark_processing,
    recover_stuck_transcriptions,
    save_failure,
    save_success,
)

logger = logging.getLogger(__name__)

# Extra lock time past the point a job can still legitimately be running.
LOCK_MARGIN_SECONDS = 30.0
ABANDONED_JOB_MESSAGE = "Transcription worker stopped before the job finished. It will be retried."


@dataclass
class RunSummary:
    processed_count: int = 0
    failed_count: int = 0
    drained: bool = False
    timed_out: bool = False
    reclaimed_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TranscriptionRunner:
    """
    Pulls jobs one at a time until the queue drains or the time budget runs out.

    On budget expiry intake stops, the in-flight job gets `grace_window` seconds to
    finish, and is then cancelled and recorded as a failed attempt so the queue's
    retry bookkeeping and the video record agree.
    """

    def __init__(
        self,
        queue: TranscriptionQueue,
        pipeline: TranscriptionPipeline,
        stale_minutes: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.stale_minutes = stale_minutes
        self.clock = clock

    async def process_job(self, job: QueuedJob, deadline: Optional[Deadline] = None) -> TranscriptionResult:
        """Run one claimed job end to end and report the outcome to the video record and the queue."""
        data = job.data
        logger.info("Processing transcription job %s (attempt %d)", job.key, job.attempts_made + 1)
        try:
            video = await mark_processing(data.video_id)
            if video is None:
                failure = TranscriptionFailure(kind=FAILURE_INPUT, message=f"Video {data.video_id} no longer exists")
                logger.warning("Dropping transcription job %s: %s", job.key, failure.message)
                await self.queue.fail(job, failure.message, retryable=False)
                return failure

            result = await self.pipeline.run(data, deadline, title=video.title)
            if isinstance(result, TranscriptionFailure):
                await save_failure(data.video_id, result.message)
                # Every pipeline failure consumes an attempt; input failures simply fail again.
                retrying = await self.queue.fail(job, result.message)
                logger.warning(
                    "Transcription job %s failed (%s)%s: %s",
                    job.key,
                    result.kind,
                    "; retry scheduled" if retrying else "",
                    result.message,
                )
                return result

            await save_success(data.video_id, result)
            await self.queue.complete(job)
            logger.info("Transcription job %s completed", job.key)
            return result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Transcription job %s crashed: %s", job.key, exc)
            message = str(exc) or exc.__class__.__name__
            await save_failure(data.video_id, message)
            try:
                await self.queue.fail(job, message)
            except Exception as queue_exc:
                # The expired lock puts the job back on a later claim.
                logger.error("Could not report crashed job %s to the queue: %s", job.key, queue_exc)
            raise

    async def run(self, max_duration: float, grace_window: float) -> RunSummary:
        summary = RunSummary()
        summary.reclaimed_count = await recover_stuck_transcriptions(self.stale_minutes)
        budget = Deadline.after(max_duration, self.clock)

        while True:
            if budget.expired():
                summary.timed_out = True
                break
            job = await self.queue.claim_next(lock_seconds=budget.remaining() + grace_window + LOCK_MARGIN_SECONDS)
            if job is None:
                summary.drained = True
                break

            job_deadline = Deadline.after(budget.remaining() + grace_window, self.clock)
            task = asyncio.create_task(self.process_job(job, job_deadline))
            done, _ = await asyncio.wait({task}, timeout=budget.remaining())
            if not done:
                summary.timed_out = True
                logger.info("Runner budget reached; waiting up to %.0fs for job %s", grace_window, job.key)
                done, _ = await asyncio.wait({task}, timeout=grace_window)
            if not done:
                await self._abandon(job, task)
                summary.failed_count += 1
                break

            self._tally(summary, task)
            if summary.timed_out:
                break

        logger.info(
            "Transcription run finished: processed=%d failed=%d drained=%s timed_out=%s reclaimed=%d",
            summary.processed_count,
            summary.failed_count,
            summary.drained,
            summary.timed_out,
            summary.reclaimed_count,
        )
        return summary

    async def _abandon(self, job: QueuedJob, task: asyncio.Task) -> None:
        logger.warning("Cancelling transcription job %s after grace window", job.key)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await save_failure(job.data.video_id, ABANDONED_JOB_MESSAGE)
        await self.queue.fail(job, ABANDONED_JOB_MESSAGE)

    def _tally(self, summary: RunSummary, task: asyncio.Task) -> None:
        if task.exception() is not None:
            summary.failed_count += 1
        elif isinstance(task.result(), TranscriptionFailure):
            summary.failed_count += 1
        else:
            summary.processed_count += 1


def build_runner(queue: TranscriptionQueue, pipeline: Optional[TranscriptionPipeline] = None) -> TranscriptionRunner:
    return TranscriptionRunner(
        queue=queue,
        pipeline=pipeline or TranscriptionPipeline.from_settings(),
        stale_minutes=settings.TRANSCRIPTION_STALE_MINUTES,
    )


async def run_transcription_worker(
    max_duration: Optional[float] = None,
    grace_window: Optional[float] = None,
) -> RunSummary:
    """One scheduled invocation: own a queue connection for the run and always release it."""
    queue = build_transcription_queue()
    try:
        runner = build_runner(queue)
        return await runner.run(
            max_duration=settings.TRANSCRIPTION_RUNNER_MAX_SECONDS if max_duration is None else max_duration,
            grace_window=settings.TRANSCRIPTION_RUNNER_GRACE_SECONDS if grace_window is None else grace_window,
        )
    finally:
        await queue.close()
