"""
Batch scheduler driving ordered audio chunks through upload and transcription.

Chunks are processed in sequential batches of ``concurrency_limit``; every
chunk in a batch is launched together and the next batch starts only after
the previous one has settled (plus a short throttle delay). Results land in a
list indexed by chunk ordinal, so completion order never affects the
transcript order.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set

from meetscribe.audio_chunking import AudioChunk
from meetscribe.services.progress import ChunkStatus, ChunkTask, ProgressReporter
from meetscribe.services.retry import RetryPolicy
from meetscribe.services.transcription.exceptions import (
    AggregateTranscriptionError,
    PipelineCancelledError,
)

logger = logging.getLogger(__name__)

TranscribeFn = Callable[[AudioChunk, Optional[str]], Awaitable[str]]
UploadFn = Callable[[AudioChunk], Awaitable[str]]


class ScheduleMode(str, Enum):
    STAGED = 'staged'        # upload every chunk, then transcribe every chunk
    COMBINED = 'combined'    # upload then transcribe each chunk in one pass


class FailurePolicy(str, Enum):
    BEST_EFFORT = 'best_effort'
    ABORT_ON_FIRST = 'abort_on_first'


class CancellationToken:
    """Cooperative cancellation shared by the scheduler and its retry waits."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def pause(self, delay: float, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> bool:
        """
        Wait ``delay`` seconds unless cancelled first.

        Returns:
            True if the token was cancelled (before or during the wait).
        """
        if self.cancelled:
            return True
        if delay <= 0:
            return False
        sleeper = asyncio.ensure_future(sleep(delay))
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, waiter):
                if not pending.done():
                    pending.cancel()
        return self.cancelled


@dataclass
class ScheduleResult:
    """Outcome of one scheduler run; ``results[i]`` is None when chunk i failed."""
    results: List[Optional[str]]
    tasks: List[ChunkTask]
    failed_ordinals: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def failed_count(self) -> int:
        return len(self.failed_ordinals)

    @property
    def succeeded_count(self) -> int:
        return self.total - self.failed_count

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_ordinals)


@dataclass
class _Run:
    """State of one ``run()`` call; nothing here is shared between runs."""
    chunks: List[AudioChunk]
    reporter: ProgressReporter
    transcribe_fn: TranscribeFn
    upload_fn: Optional[UploadFn]
    results: List[Optional[str]]
    in_flight: Set[asyncio.Future] = field(default_factory=set)

    @property
    def total(self) -> int:
        return len(self.chunks)

    @property
    def tasks(self) -> List[ChunkTask]:
        return self.reporter.tasks


class ChunkScheduler:
    """
    Run chunk uploads and transcriptions with bounded concurrency.

    Under ``best_effort`` a failed chunk yields None and the run keeps going
    until more than ``ceil(total * max_failure_fraction)`` chunks have
    failed; ``abort_on_first`` stops at the first failure. Either way no
    further batch is launched once the run is aborted.

    Cancellation stops new batches and pending backoff/throttle waits, but
    calls already sent to the provider are left to finish; their results are
    dropped.
    """

    def __init__(self, concurrency_limit: int = 2, upload_concurrency_limit: int = 1,
                 batch_delay: float = 0.5, retry_policy: Optional[RetryPolicy] = None,
                 mode: str = ScheduleMode.STAGED, failure_policy: str = FailurePolicy.BEST_EFFORT,
                 max_failure_fraction: float = 0.3, reporter: Optional[ProgressReporter] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        if concurrency_limit < 1 or upload_concurrency_limit < 1:
            raise ValueError("Concurrency limits must be at least 1")
        if not 0 <= max_failure_fraction <= 1:
            raise ValueError(f"max_failure_fraction must be within [0, 1], got {max_failure_fraction}")
        self.concurrency_limit = concurrency_limit
        self.upload_concurrency_limit = upload_concurrency_limit
        self.batch_delay = batch_delay
        self.retry_policy = retry_policy or RetryPolicy(sleep=sleep)
        self.mode = ScheduleMode(mode)
        self.failure_policy = FailurePolicy(failure_policy)
        self.max_failure_fraction = max_failure_fraction
        self.reporter = reporter or ProgressReporter()
        self.cancel_token = cancel_token or CancellationToken()
        self.sleep = sleep
        self._reporter_busy = False

    @classmethod
    def from_settings(cls, settings, **kwargs) -> 'ChunkScheduler':
        kwargs.setdefault('retry_policy', RetryPolicy.from_settings(settings))
        return cls(
            concurrency_limit=settings.concurrency_limit,
            upload_concurrency_limit=settings.upload_concurrency_limit,
            batch_delay=settings.batch_delay_seconds,
            mode=settings.schedule_mode,
            failure_policy=settings.failure_policy,
            max_failure_fraction=settings.max_failure_fraction,
            **kwargs,
        )

    def failure_ceiling(self, total: int) -> int:
        """Largest number of failed chunks a best-effort run tolerates."""
        return math.ceil(total * self.max_failure_fraction)

    async def run(self, chunks: Sequence[AudioChunk], transcribe_fn: TranscribeFn,
                  upload_fn: Optional[UploadFn] = None,
                  reporter: Optional[ProgressReporter] = None) -> ScheduleResult:
        """
        Drive every chunk to a terminal state.

        ``reporter`` defaults to the scheduler's own; a run that overlaps
        another one on the same scheduler gets a fresh reporter instead.

        Raises:
            AggregateTranscriptionError: failures exceeded what the policy allows
            PipelineCancelledError: the cancellation token fired
        """
        owns_shared_reporter = reporter is None and not self._reporter_busy
        if reporter is None:
            reporter = self.reporter if owns_shared_reporter else ProgressReporter()
        if owns_shared_reporter:
            self._reporter_busy = True

        chunks = list(chunks)
        reporter.set_tasks([
            ChunkTask(id=i, size_bytes=chunk.size, duration_seconds=chunk.duration_seconds)
            for i, chunk in enumerate(chunks)
        ])
        run = _Run(chunks=chunks, reporter=reporter, transcribe_fn=transcribe_fn, upload_fn=upload_fn,
                   results=[None] * len(chunks))
        try:
            return await self._execute(run)
        finally:
            if owns_shared_reporter:
                self._reporter_busy = False

    async def _execute(self, run: _Run) -> ScheduleResult:
        total = run.total
        logger.info(f"Scheduling {total} chunks: mode={self.mode.value}, policy={self.failure_policy.value}, "
                    f"concurrency={self.concurrency_limit}, failure ceiling={self.failure_ceiling(total)}")

        if run.upload_fn is not None and self.mode == ScheduleMode.STAGED:
            run.reporter.set_stage('uploading')
            await self._run_batches(run, range(total), self.upload_concurrency_limit, self._upload_one)
            run.reporter.set_stage('transcribing')
            uploaded = [i for i, task in enumerate(run.tasks) if task.status != ChunkStatus.ERROR]
            await self._run_batches(run, uploaded, self.concurrency_limit, self._transcribe_one)
        else:
            run.reporter.set_stage('uploading' if run.upload_fn is not None else 'transcribing')
            await self._run_batches(run, range(total), self.concurrency_limit, self._process_one)

        failed = [task.id for task in run.tasks if task.status == ChunkStatus.ERROR]
        self._enforce_failure_policy(run, final=True)
        logger.info(f"Chunk scheduling finished: {total - len(failed)}/{total} succeeded")
        return ScheduleResult(results=list(run.results), tasks=run.tasks, failed_ordinals=failed)

    async def _run_batches(self, run: _Run, ordinals, limit: int,
                           worker: Callable[[_Run, int], Awaitable[Any]]) -> None:
        ordinals = list(ordinals)
        batch_count = math.ceil(len(ordinals) / limit) if ordinals else 0
        for batch_number, start in enumerate(range(0, len(ordinals), limit)):
            if batch_number > 0 and self.batch_delay > 0:
                if await self.cancel_token.pause(self.batch_delay, self.sleep):
                    self._raise_cancelled(run)
            if self.cancel_token.cancelled:
                self._raise_cancelled(run)

            batch = ordinals[start:start + limit]
            logger.info(f"Starting batch {batch_number + 1}/{batch_count}: chunks {[i + 1 for i in batch]}")
            await self._await_batch(run, [worker(run, i) for i in batch])
            self._enforce_failure_policy(run, final=False)

    async def _await_batch(self, run: _Run, coroutines) -> None:
        gathered = asyncio.gather(*coroutines, return_exceptions=True)
        cancel_waiter = asyncio.ensure_future(self.cancel_token.wait())
        try:
            await asyncio.wait({gathered, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not cancel_waiter.done():
                cancel_waiter.cancel()

        if not gathered.done():
            # Dispatched calls keep running; the workers drop their results
            run.in_flight.add(gathered)
            gathered.add_done_callback(lambda fut: self._finish_abandoned(run, fut))
            self._raise_cancelled(run)

        # Workers record their own failures; anything surfacing here is cancellation
        for outcome in gathered.result():
            if isinstance(outcome, BaseException):
                raise outcome
        if self.cancel_token.cancelled:
            self._raise_cancelled(run)

    @staticmethod
    def _finish_abandoned(run: _Run, fut: asyncio.Future) -> None:
        run.in_flight.discard(fut)
        if fut.cancelled():
            return
        settled = sum(1 for outcome in fut.result() if not isinstance(outcome, BaseException))
        logger.info(f"{settled} chunk call(s) dispatched before cancellation settled; results discarded")

    def _raise_cancelled(self, run: _Run):
        logger.warning(f"Chunk scheduling cancelled ({len(run.in_flight)} batch(es) still in flight)")
        raise PipelineCancelledError("Transcription was cancelled")

    def _enforce_failure_policy(self, run: _Run, final: bool) -> None:
        failed = [t.id for t in run.tasks if t.status == ChunkStatus.ERROR]
        if not failed:
            return
        total = run.total
        ceiling = self.failure_ceiling(total)
        if self.failure_policy == FailurePolicy.ABORT_ON_FIRST:
            reason = f"chunk {failed[0] + 1} failed"
        elif len(failed) > ceiling:
            reason = f"{len(failed)} of {total} chunks failed (more than the {ceiling} allowed)"
        elif final and len(failed) == total:
            reason = f"all {total} chunks failed"
        else:
            return
        logger.error(f"Aborting transcription: {reason}")
        raise AggregateTranscriptionError(
            f"Transcription failed: {reason}",
            failed_ordinals=failed,
            total=total,
        )

    @staticmethod
    def _retry_callback(run: _Run, ordinal: int):
        def on_retry(retry_number, error, delay):
            run.reporter.record_retry(ordinal)
        return on_retry

    def _fail(self, run: _Run, ordinal: int, error: Exception) -> None:
        if self.cancel_token.cancelled:
            logger.info(f"Chunk {ordinal + 1}/{run.total} failed after cancellation: {error}")
            return
        logger.error(f"Chunk {ordinal + 1}/{run.total} failed: {error}")
        run.reporter.transition(ordinal, ChunkStatus.ERROR, error=str(error))

    async def _upload_one(self, run: _Run, ordinal: int) -> bool:
        chunk = run.chunks[ordinal]
        run.reporter.transition(ordinal, ChunkStatus.UPLOADING)
        try:
            url = await self.retry_policy.call(
                lambda: run.upload_fn(chunk),
                description=f"Upload of chunk {ordinal + 1}/{run.total}",
                on_retry=self._retry_callback(run, ordinal),
                cancel_token=self.cancel_token,
            )
        except PipelineCancelledError:
            raise
        except Exception as e:
            self._fail(run, ordinal, e)
            return False
        # Kept even after cancellation so the staged object can be cleaned up
        run.tasks[ordinal].blob_url = url
        if self.cancel_token.cancelled:
            return False
        run.reporter.record_progress(ordinal, 100)
        logger.info(f"Uploaded chunk {ordinal + 1}/{run.total} ({chunk.size_mb:.1f}MB)")
        return True

    async def _transcribe_one(self, run: _Run, ordinal: int) -> None:
        chunk = run.chunks[ordinal]
        task = run.tasks[ordinal]
        run.reporter.transition(ordinal, ChunkStatus.TRANSCRIBING)
        try:
            text = await self.retry_policy.call(
                lambda: run.transcribe_fn(chunk, task.blob_url),
                description=f"Transcription of chunk {ordinal + 1}/{run.total}",
                on_retry=self._retry_callback(run, ordinal),
                cancel_token=self.cancel_token,
            )
        except PipelineCancelledError:
            raise
        except Exception as e:
            self._fail(run, ordinal, e)
            return
        if self.cancel_token.cancelled:
            return
        run.results[ordinal] = text
        run.reporter.transition(ordinal, ChunkStatus.COMPLETED, transcription=text)
        logger.info(f"Transcribed chunk {ordinal + 1}/{run.total}: {len(text or '')} characters")

    async def _process_one(self, run: _Run, ordinal: int) -> None:
        if run.upload_fn is not None:
            if not await self._upload_one(run, ordinal):
                return
        await self._transcribe_one(run, ordinal)
