"""
Per-chunk status tracking and aggregate progress for a pipeline run.

Progress is derived only from real state transitions: each chunk moves
``pending -> uploading -> transcribing -> completed`` (or ``error``), and
every transition is pushed to subscribed listeners as a ProgressSnapshot.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ChunkStatus(str, Enum):
    PENDING = 'pending'
    UPLOADING = 'uploading'
    TRANSCRIBING = 'transcribing'
    COMPLETED = 'completed'
    ERROR = 'error'


ALLOWED_TRANSITIONS = {
    ChunkStatus.PENDING: {ChunkStatus.UPLOADING, ChunkStatus.TRANSCRIBING},
    ChunkStatus.UPLOADING: {ChunkStatus.TRANSCRIBING, ChunkStatus.ERROR},
    ChunkStatus.TRANSCRIBING: {ChunkStatus.COMPLETED, ChunkStatus.ERROR},
    ChunkStatus.COMPLETED: set(),
    ChunkStatus.ERROR: set(),
}

TERMINAL_STATUSES = frozenset({ChunkStatus.COMPLETED, ChunkStatus.ERROR})

STAGES = ('chunking', 'uploading', 'transcribing', 'combining', 'summarizing', 'completed', 'error')

STAGE_LABELS = {
    'chunking': 'Splitting audio',
    'uploading': 'Uploading segments',
    'transcribing': 'Transcribing segments',
    'combining': 'Combining transcripts',
    'summarizing': 'Summarizing',
    'completed': 'Completed',
    'error': 'Failed',
}


@dataclass
class ChunkTask:
    """Mutable processing state of one chunk, written only by the coroutine handling its ordinal."""
    id: int
    status: ChunkStatus = ChunkStatus.PENDING
    progress: int = 0
    retries: int = 0
    blob_url: Optional[str] = None
    transcription: Optional[str] = None
    error: Optional[str] = None
    size_bytes: int = 0
    duration_seconds: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance(self, status: ChunkStatus) -> None:
        """Move to ``status``; backwards or out-of-order transitions raise ValueError."""
        status = ChunkStatus(status)
        if status == self.status:
            return
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Chunk {self.id}: illegal transition {self.status.value} -> {status.value}")
        self.status = status
        self.progress = 100 if status in TERMINAL_STATUSES else 0

    @property
    def weighted_percent(self) -> float:
        # Upload covers 0-40, transcription 40-100
        if self.status == ChunkStatus.UPLOADING:
            return 0.4 * self.progress
        if self.status == ChunkStatus.TRANSCRIBING:
            return 40 + 0.6 * self.progress
        if self.is_terminal:
            return 100.0
        return 0.0

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'status': self.status.value,
            'progress': self.progress,
            'retries': self.retries,
            'blob_url': self.blob_url,
            'error': self.error,
            'size_mb': self.size_bytes / (1024 * 1024),
            'duration': self.duration_seconds,
            'processing_time': (self.finished_at - self.started_at)
            if self.started_at is not None and self.finished_at is not None else 0,
        }


@dataclass
class PipelineRun:
    """Ephemeral state of one pipeline invocation."""
    tasks: List[ChunkTask] = field(default_factory=list)
    stage: str = 'chunking'
    started_at: float = 0.0
    stage_started_at: float = 0.0


@dataclass(frozen=True)
class ProgressSnapshot:
    stage: str
    percent: float
    label: str
    completed: int
    failed: int
    active: int
    total: int
    elapsed_seconds: float
    stage_elapsed_seconds: float


Listener = Callable[[ProgressSnapshot], None]


class ProgressReporter:
    """Owns a PipelineRun and notifies listeners on every real transition."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        now = clock()
        self.run = PipelineRun(started_at=now, stage_started_at=now)
        self._listeners: List[Listener] = []

    @property
    def tasks(self) -> List[ChunkTask]:
        return self.run.tasks

    @property
    def stage(self) -> str:
        return self.run.stage

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def set_tasks(self, tasks: List[ChunkTask]) -> None:
        self.run.tasks = list(tasks)
        self._notify()

    def set_stage(self, stage: str) -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        if stage == self.run.stage:
            return
        logger.info(f"Pipeline stage: {self.run.stage} -> {stage}")
        self.run.stage = stage
        self.run.stage_started_at = self.clock()
        self._notify()

    def transition(self, ordinal: int, status: ChunkStatus, **fields) -> ChunkTask:
        """Advance one task's status, update any extra fields, then notify."""
        task = self.run.tasks[ordinal]
        task.advance(status)
        if status in (ChunkStatus.UPLOADING, ChunkStatus.TRANSCRIBING) and task.started_at is None:
            task.started_at = self.clock()
        if task.is_terminal:
            task.finished_at = self.clock()
        for name, value in fields.items():
            setattr(task, name, value)
        self._notify()
        return task

    def record_progress(self, ordinal: int, progress: int) -> None:
        """Report intra-stage progress (0-100) for a non-terminal task."""
        task = self.run.tasks[ordinal]
        if task.is_terminal:
            return
        progress = max(task.progress, min(100, int(progress)))
        if progress != task.progress:
            task.progress = progress
            self._notify()

    def record_retry(self, ordinal: int) -> None:
        self.run.tasks[ordinal].retries += 1
        self._notify()

    def snapshot(self) -> ProgressSnapshot:
        tasks = self.run.tasks
        total = len(tasks)
        completed = sum(1 for t in tasks if t.status == ChunkStatus.COMPLETED)
        failed = sum(1 for t in tasks if t.status == ChunkStatus.ERROR)
        active = sum(1 for t in tasks if t.status in (ChunkStatus.UPLOADING, ChunkStatus.TRANSCRIBING))

        if self.run.stage == 'completed':
            percent = 100.0
        elif total:
            percent = sum(t.weighted_percent for t in tasks) / total
        else:
            percent = 0.0

        label = STAGE_LABELS[self.run.stage]
        if total and self.run.stage in ('uploading', 'transcribing'):
            label = f"{label} ({completed}/{total} complete"
            label += f", {failed} failed)" if failed else ")"

        now = self.clock()
        return ProgressSnapshot(
            stage=self.run.stage,
            percent=round(percent, 1),
            label=label,
            completed=completed,
            failed=failed,
            active=active,
            total=total,
            elapsed_seconds=now - self.run.started_at,
            stage_elapsed_seconds=now - self.run.stage_started_at,
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")
