"""Durable video transcription job queue (Redis, with an in-memory twin for tests/dev)."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSCRIPTION_JOB_NAME = "transcribe-video"
JOB_KEY_PREFIX = "transcribe-"

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
IN_FLIGHT_STATES = (WAITING, DELAYED, ACTIVE)
TERMINAL_STATES = (COMPLETED, FAILED)

STALLED_REASON = "Job lock expired before the worker reported a result"


class QueueUnavailableError(RuntimeError):
    """Queue backend could not be reached (or did not answer in time)."""


@dataclass(frozen=True)
class TranscriptionJobData:
    video_id: str
    s3_key: str
    file_name: str
    generate_description: bool = False

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TranscriptionJobData":
        return cls(
            video_id=str(payload["video_id"]),
            s3_key=str(payload["s3_key"]),
            file_name=str(payload.get("file_name") or ""),
            generate_description=bool(payload.get("generate_description", False)),
        )


@dataclass(frozen=True)
class JobOptions:
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    keep_completed: int = 100
    keep_failed: int = 50
    enqueue_timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls) -> "JobOptions":
        return cls(
            max_attempts=max(int(settings.TRANSCRIPTION_MAX_ATTEMPTS), 1),
            backoff_seconds=max(float(settings.TRANSCRIPTION_BACKOFF_SECONDS), 0.0),
            keep_completed=max(int(settings.TRANSCRIPTION_KEEP_COMPLETED), 0),
            keep_failed=max(int(settings.TRANSCRIPTION_KEEP_FAILED), 0),
            enqueue_timeout_seconds=max(float(settings.TRANSCRIPTION_ENQUEUE_TIMEOUT_SECONDS), 0.1),
        )

    def backoff_delay(self, attempts_made: int) -> float:
        """Exponential backoff: base, 2x base, 4x base... after the 1st, 2nd, 3rd failure."""
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))


@dataclass
class QueuedJob:
    key: str
    data: TranscriptionJobData
    state: str = WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    created_at: float = 0.0
    available_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_reason: Optional[str] = None
    token: Optional[str] = None
    lock_expires_at: Optional[float] = None


@dataclass(frozen=True)
class JobStatus:
    state: str
    attempts_made: int
    max_attempts: int
    failure_reason: Optional[str] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "failure_reason": self.failure_reason,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def job_key_for(video_id: str) -> str:
    """Dedup identity for a video's transcription job."""
    return f"{JOB_KEY_PREFIX}{video_id}"


def _to_datetime(timestamp: Optional[float]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _status_of(job: QueuedJob) -> JobStatus:
    return JobStatus(
        state=job.state,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        failure_reason=job.failed_reason,
        finished_at=_to_datetime(job.finished_at),
    )


class TranscriptionQueue(Protocol):
    """Operations shared by the upload path (producer) and the runner (consumer)."""

    options: JobOptions

    async def enqueue(self, data: TranscriptionJobData, job_key: Optional[str] = None) -> QueuedJob: ...

    async def get_job_status(self, job_key: str) -> Optional[JobStatus]: ...

    async def claim_next(self, lock_seconds: float) -> Optional[QueuedJob]: ...

    async def complete(self, job: QueuedJob) -> bool: ...

    async def fail(self, job: QueuedJob, reason: str, retryable: bool = True) -> bool: ...

    async def waiting_count(self) -> int: ...

    async def close(self) -> None: ...


async def add_transcription_job(
    queue: TranscriptionQueue,
    video_id: str,
    s3_key: str,
    file_name: str,
    generate_description: bool,
) -> QueuedJob:
    """Queue a video for transcription; a no-op while a job for the video is still in flight."""
    data = TranscriptionJobData(
        video_id=video_id,
        s3_key=s3_key,
        file_name=file_name,
        generate_description=generate_description,
    )
    return await queue.enqueue(data, job_key=job_key_for(video_id))


class InMemoryTranscriptionQueue:
    """Process-local queue with the same semantics as the Redis queue."""

    def __init__(self, options: Optional[JobOptions] = None, clock: Callable[[], float] = time.time):
        self.options = options or JobOptions()
        self.clock = clock
        self._jobs: Dict[str, QueuedJob] = {}
        self._waiting: Deque[str] = deque()
        self._completed: Deque[str] = deque()
        self._failed: Deque[str] = deque()
        self._lock = asyncio.Lock()
        self.closed = False

    async def enqueue(self, data: TranscriptionJobData, job_key: Optional[str] = None) -> QueuedJob:
        key = job_key or job_key_for(data.video_id)
        async with self._lock:
            existing = self._jobs.get(key)
            if existing and existing.state in IN_FLIGHT_STATES:
                logger.info("Transcription job %s already %s; skipping enqueue", key, existing.state)
                return replace(existing)
            self._forget_history(key)
            job = QueuedJob(
                key=key,
                data=data,
                state=WAITING,
                max_attempts=self.options.max_attempts,
                created_at=self.clock(),
            )
            self._jobs[key] = job
            self._waiting.append(key)
            return replace(job)

    async def get_job_status(self, job_key: str) -> Optional[JobStatus]:
        async with self._lock:
            job = self._jobs.get(job_key)
            return _status_of(job) if job else None

    async def claim_next(self, lock_seconds: float) -> Optional[QueuedJob]:
        async with self._lock:
            now = self.clock()
            self._promote_delayed(now)
            self._recover_stalled(now)
            if not self._waiting:
                return None
            key = self._waiting.popleft()
            job = self._jobs[key]
            job.state = ACTIVE
            job.available_at = None
            job.token = uuid.uuid4().hex
            job.lock_expires_at = now + lock_seconds
            return replace(job)

    async def complete(self, job: QueuedJob) -> bool:
        async with self._lock:
            current = self._owned(job)
            if current is None:
                return False
            current.state = COMPLETED
            current.attempts_made += 1
            current.failed_reason = None
            current.finished_at = self.clock()
            current.token = None
            current.lock_expires_at = None
            self._record_history(current.key, self._completed, self.options.keep_completed)
            return True

    async def fail(self, job: QueuedJob, reason: str, retryable: bool = True) -> bool:
        async with self._lock:
            current = self._owned(job)
            if current is None:
                return False
            current.attempts_made += 1
            current.failed_reason = reason
            current.token = None
            current.lock_expires_at = None
            return self._retry_or_fail(current, retryable, self.clock())

    async def waiting_count(self) -> int:
        async with self._lock:
            return len(self._waiting)

    async def close(self) -> None:
        self.closed = True

    def _owned(self, job: QueuedJob) -> Optional[QueuedJob]:
        current = self._jobs.get(job.key)
        if current is None or current.state != ACTIVE or current.token != job.token:
            logger.warning("Transcription job %s is no longer owned by this worker; result ignored", job.key)
            return None
        return current

    def _retry_or_fail(self, job: QueuedJob, retryable: bool, now: float) -> bool:
        if retryable and job.attempts_made < job.max_attempts:
            job.state = DELAYED
            job.available_at = now + self.options.backoff_delay(job.attempts_made)
            return True
        job.state = FAILED
        job.finished_at = now
        self._record_history(job.key, self._failed, self.options.keep_failed)
        return False

    def _promote_delayed(self, now: float) -> None:
        due = sorted(
            (job for job in self._jobs.values() if job.state == DELAYED and (job.available_at or 0) <= now),
            key=lambda job: job.available_at or 0,
        )
        for job in due:
            job.state = WAITING
            job.available_at = None
            self._waiting.append(job.key)

    def _recover_stalled(self, now: float) -> None:
        stalled = [
            job for job in self._jobs.values()
            if job.state == ACTIVE and job.lock_expires_at is not None and job.lock_expires_at <= now
        ]
        for job in stalled:
            logger.warning("Recovering stalled transcription job %s", job.key)
            job.attempts_made += 1
            job.failed_reason = STALLED_REASON
            job.token = None
            job.lock_expires_at = None
            if job.attempts_made < job.max_attempts:
                job.state = WAITING
                self._waiting.append(job.key)
            else:
                job.state = FAILED
                job.finished_at = now
                self._record_history(job.key, self._failed, self.options.keep_failed)

    def _record_history(self, key: str, history: Deque[str], keep: int) -> None:
        history.appendleft(key)
        while len(history) > keep:
            evicted = history.pop()
            evicted_job = self._jobs.get(evicted)
            if evicted_job and evicted_job.state in TERMINAL_STATES:
                del self._jobs[evicted]

    def _forget_history(self, key: str) -> None:
        for history in (self._completed, self._failed):
            try:
                history.remove(key)
            except ValueError:
                pass


class RedisTranscriptionQueue:
    """
    Redis-backed queue.

    Layout under `lms:queue:{name}`:
      wait       list of job keys, LPUSH on enqueue / RPOP on claim (FIFO)
      delayed    zset of job keys scored by the time they become claimable
      active     zset of job keys scored by lock expiry
      completed  list of job keys, newest first, trimmed to keep_completed
      failed     list of job keys, newest first, trimmed to keep_failed
      job:{key}  hash with the job fields
    State changes run in WATCH/MULTI transactions so concurrent runner
    invocations never claim the same job.
    """

    def __init__(
        self,
        connection: redis.Redis,
        name: str,
        options: Optional[JobOptions] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = connection
        self.name = name
        self.options = options or JobOptions()
        self.clock = clock
        self.prefix = f"lms:queue:{name}"
        self.wait_key = f"{self.prefix}:wait"
        self.delayed_key = f"{self.prefix}:delayed"
        self.active_key = f"{self.prefix}:active"
        self.completed_key = f"{self.prefix}:completed"
        self.failed_key = f"{self.prefix}:failed"
        self._closed = False

    @classmethod
    def from_url(cls, url: str, name: str, options: Optional[JobOptions] = None) -> "RedisTranscriptionQueue":
        options = options or JobOptions()
        connection = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=options.enqueue_timeout_seconds,
            socket_timeout=options.enqueue_timeout_seconds,
        )
        return cls(connection, name, options)

    def job_hash_key(self, job_key: str) -> str:
        return f"{self.prefix}:job:{job_key}"

    async def enqueue(self, data: TranscriptionJobData, job_key: Optional[str] = None) -> QueuedJob:
        key = job_key or job_key_for(data.video_id)
        try:
            return await asyncio.wait_for(self._enqueue(key, data), timeout=self.options.enqueue_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise QueueUnavailableError(
                f"Transcription queue did not accept job {key} within {self.options.enqueue_timeout_seconds:.0f}s"
            ) from exc
        except RedisError as exc:
            raise QueueUnavailableError(f"Transcription queue unavailable: {exc}") from exc

    async def get_job_status(self, job_key: str) -> Optional[JobStatus]:
        try:
            fields = await asyncio.wait_for(
                self.redis.hgetall(self.job_hash_key(job_key)),
                timeout=self.options.enqueue_timeout_seconds,
            )
        except (asyncio.TimeoutError, RedisError) as exc:
            raise QueueUnavailableError(f"Transcription queue unavailable: {exc}") from exc
        if not fields:
            return None
        return _status_of(self._decode(job_key, fields))

    async def claim_next(self, lock_seconds: float) -> Optional[QueuedJob]:
        now = self.clock()
        await self._promote_delayed(now)
        await self._recover_stalled(now)

        async def _claim(pipe) -> Optional[QueuedJob]:
            key = await pipe.lindex(self.wait_key, -1)
            if key is None:
                pipe.multi()
                return None
            fields = await pipe.hgetall(self.job_hash_key(key))
            token = uuid.uuid4().hex
            lock_expires_at = now + lock_seconds
            pipe.multi()
            pipe.rpop(self.wait_key)
            pipe.hset(
                self.job_hash_key(key),
                mapping={"state": ACTIVE, "token": token, "lock_expires_at": lock_expires_at, "available_at": ""},
            )
            pipe.zadd(self.active_key, {key: lock_expires_at})
            job = self._decode(key, fields)
            job.state = ACTIVE
            job.token = token
            job.lock_expires_at = lock_expires_at
            job.available_at = None
            return job

        return await self._transact(_claim, self.wait_key)

    async def complete(self, job: QueuedJob) -> bool:
        now = self.clock()
        hash_key = self.job_hash_key(job.key)

        async def _complete(pipe) -> bool:
            fields = await pipe.hgetall(hash_key)
            if not self._owns(job, fields):
                pipe.multi()
                return False
            attempts = int(fields.get("attempts_made") or 0) + 1
            pipe.multi()
            pipe.zrem(self.active_key, job.key)
            pipe.hset(
                hash_key,
                mapping={
                    "state": COMPLETED,
                    "attempts_made": attempts,
                    "failed_reason": "",
                    "finished_at": now,
                    "token": "",
                    "lock_expires_at": "",
                },
            )
            pipe.lpush(self.completed_key, job.key)
            return True

        owned = await self._transact(_complete, hash_key)
        if owned:
            await self._trim_history(self.completed_key, self.options.keep_completed)
        else:
            logger.warning("Transcription job %s is no longer owned by this worker; result ignored", job.key)
        return owned

    async def fail(self, job: QueuedJob, reason: str, retryable: bool = True) -> bool:
        now = self.clock()
        hash_key = self.job_hash_key(job.key)
        outcome: Dict[str, bool] = {}

        async def _fail(pipe) -> bool:
            fields = await pipe.hgetall(hash_key)
            if not self._owns(job, fields):
                pipe.multi()
                return False
            attempts = int(fields.get("attempts_made") or 0) + 1
            max_attempts = int(fields.get("max_attempts") or self.options.max_attempts)
            pipe.multi()
            pipe.zrem(self.active_key, job.key)
            outcome["retrying"] = self._queue_retry_or_failure(
                pipe, job.key, attempts, max_attempts, reason, retryable, now, requeue_now=False
            )
            return True

        owned = await self._transact(_fail, hash_key)
        if not owned:
            logger.warning("Transcription job %s is no longer owned by this worker; failure ignored", job.key)
            return False
        if not outcome.get("retrying"):
            await self._trim_history(self.failed_key, self.options.keep_failed)
        return bool(outcome.get("retrying"))

    async def waiting_count(self) -> int:
        return int(await self.redis.llen(self.wait_key))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.redis.aclose()

    async def _enqueue(self, key: str, data: TranscriptionJobData) -> QueuedJob:
        hash_key = self.job_hash_key(key)

        async def _add(pipe) -> QueuedJob:
            fields = await pipe.hgetall(hash_key)
            if fields and fields.get("state") in IN_FLIGHT_STATES:
                pipe.multi()
                logger.info("Transcription job %s already %s; skipping enqueue", key, fields.get("state"))
                return self._decode(key, fields)
            job = QueuedJob(
                key=key,
                data=data,
                state=WAITING,
                max_attempts=self.options.max_attempts,
                created_at=self.clock(),
            )
            pipe.multi()
            pipe.lrem(self.completed_key, 0, key)
            pipe.lrem(self.failed_key, 0, key)
            pipe.delete(hash_key)
            pipe.hset(hash_key, mapping=self._encode(job))
            pipe.lpush(self.wait_key, key)
            return job

        return await self._transact(_add, hash_key)

    async def _promote_delayed(self, now: float) -> None:
        async def _promote(pipe) -> int:
            due = await pipe.zrangebyscore(self.delayed_key, "-inf", now)
            pipe.multi()
            for key in due:
                pipe.zrem(self.delayed_key, key)
                pipe.lpush(self.wait_key, key)
                pipe.hset(self.job_hash_key(key), mapping={"state": WAITING, "available_at": ""})
            return len(due)

        promoted = await self._transact(_promote, self.delayed_key)
        if promoted:
            logger.info("Promoted %d delayed transcription job(s) to waiting", promoted)

    async def _recover_stalled(self, now: float) -> None:
        failed_any: Dict[str, bool] = {}

        async def _recover(pipe) -> int:
            stalled = await pipe.zrangebyscore(self.active_key, "-inf", now)
            rows = [(key, await pipe.hgetall(self.job_hash_key(key))) for key in stalled]
            pipe.multi()
            for key, fields in rows:
                attempts = int(fields.get("attempts_made") or 0) + 1
                max_attempts = int(fields.get("max_attempts") or self.options.max_attempts)
                pipe.zrem(self.active_key, key)
                if not self._queue_retry_or_failure(
                    pipe, key, attempts, max_attempts, STALLED_REASON, True, now, requeue_now=True
                ):
                    failed_any["failed"] = True
            return len(rows)

        recovered = await self._transact(_recover, self.active_key)
        if recovered:
            logger.warning("Recovered %d stalled transcription job(s)", recovered)
        if failed_any:
            await self._trim_history(self.failed_key, self.options.keep_failed)

    def _queue_retry_or_failure(
        self,
        pipe,
        key: str,
        attempts: int,
        max_attempts: int,
        reason: str,
        retryable: bool,
        now: float,
        requeue_now: bool,
    ) -> bool:
        hash_key = self.job_hash_key(key)
        common = {"attempts_made": attempts, "failed_reason": reason, "token": "", "lock_expires_at": ""}
        if retryable and attempts < max_attempts:
            if requeue_now:
                pipe.hset(hash_key, mapping={**common, "state": WAITING, "available_at": ""})
                pipe.lpush(self.wait_key, key)
            else:
                available_at = now + self.options.backoff_delay(attempts)
                pipe.hset(hash_key, mapping={**common, "state": DELAYED, "available_at": available_at})
                pipe.zadd(self.delayed_key, {key: available_at})
            return True
        pipe.hset(hash_key, mapping={**common, "state": FAILED, "finished_at": now})
        pipe.lpush(self.failed_key, key)
        return False

    async def _trim_history(self, list_key: str, keep: int) -> None:
        evicted = await self.redis.lrange(list_key, keep, -1)
        if not evicted:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.ltrim(list_key, 0, keep - 1) if keep > 0 else pipe.delete(list_key)
            for key in evicted:
                pipe.hget(self.job_hash_key(key), "state")
            results = await pipe.execute()
        stale = [
            self.job_hash_key(key)
            for key, state in zip(evicted, results[1:])
            if state in TERMINAL_STATES
        ]
        if stale:
            await self.redis.delete(*stale)

    async def _transact(self, func: Callable[[Any], Awaitable[T]], *watch_keys: str) -> T:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*watch_keys)
                    result = await func(pipe)
                    await pipe.execute()
                    return result
                except WatchError:
                    continue

    def _owns(self, job: QueuedJob, fields: Dict[str, str]) -> bool:
        return bool(fields) and fields.get("state") == ACTIVE and fields.get("token") == job.token

    def _encode(self, job: QueuedJob) -> Dict[str, Any]:
        return {
            "name": TRANSCRIPTION_JOB_NAME,
            "data": json.dumps(asdict(job.data)),
            "state": job.state,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "created_at": job.created_at,
            "available_at": "" if job.available_at is None else job.available_at,
            "finished_at": "" if job.finished_at is None else job.finished_at,
            "failed_reason": job.failed_reason or "",
            "token": job.token or "",
            "lock_expires_at": "" if job.lock_expires_at is None else job.lock_expires_at,
        }

    def _decode(self, key: str, fields: Dict[str, str]) -> QueuedJob:
        def _float(name: str) -> Optional[float]:
            raw = fields.get(name)
            return float(raw) if raw not in (None, "") else None

        return QueuedJob(
            key=key,
            data=TranscriptionJobData.from_dict(json.loads(fields.get("data") or "{}")),
            state=fields.get("state") or WAITING,
            attempts_made=int(fields.get("attempts_made") or 0),
            max_attempts=int(fields.get("max_attempts") or self.options.max_attempts),
            created_at=_float("created_at") or 0.0,
            available_at=_float("available_at"),
            finished_at=_float("finished_at"),
            failed_reason=fields.get("failed_reason") or None,
            token=fields.get("token") or None,
            lock_expires_at=_float("lock_expires_at"),
        )


def build_transcription_queue(options: Optional[JobOptions] = None) -> TranscriptionQueue:
    """Composition-root factory; callers own the returned queue and must close() it."""
    options = options or JobOptions.from_settings()
    backend = (settings.TRANSCRIPTION_QUEUE_BACKEND or "redis").strip().lower()
    if backend == "memory":
        return InMemoryTranscriptionQueue(options)
    if backend != "redis":
        raise ValueError(f"Unknown TRANSCRIPTION_QUEUE_BACKEND: {backend}")
    return RedisTranscriptionQueue.from_url(settings.REDIS_URL, settings.TRANSCRIPTION_QUEUE_NAME, options)
