"""
Job tracker: admission control, the staged encoding pipeline and status polling
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .errors import AlreadyInProgress, JobNotFound, StageError
from .renditions import resolve_ladder

logger = logging.getLogger(__name__)

DOWNLOAD_RANGE = (0, 10)
CONVERT_RANGE = (10, 80)
PUBLISH_RANGE = (80, 90)
MANIFEST_RANGE = (90, 100)


class JobState(str, Enum):
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Stage(str, Enum):
    DOWNLOAD = 'download'
    CONVERT = 'convert'
    PUBLISH = 'publish'
    MANIFEST = 'manifest'


@dataclass(frozen=True)
class Job:
    resource_id: str
    source_key: str
    destination_prefix: str
    renditions: tuple
    state: JobState = JobState.PROCESSING
    stage: Optional[Stage] = None
    progress: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    result: Optional[dict] = None
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self):
        return self.state is not JobState.PROCESSING


@dataclass(frozen=True)
class StageStep:
    stage: Stage
    floor: int
    ceiling: int
    rendition: object = None

    @property
    def label(self):
        if self.stage is Stage.DOWNLOAD:
            return 'Downloading video from storage'
        if self.stage is Stage.CONVERT:
            return f"Converting to {self.rendition.name}"
        if self.stage is Stage.PUBLISH:
            return 'Uploading HLS files to storage'
        return 'Publishing master playlist'


def plan_stages(renditions):
    """
    Lay out the pipeline with its fixed progress allocation.

    Each rendition gets an equal integer slice of the convert range; slices
    are contiguous so progress never moves backwards between steps.
    """
    steps = [StageStep(Stage.DOWNLOAD, *DOWNLOAD_RANGE)]
    low, high = CONVERT_RANGE
    count = len(renditions)
    for i, rendition in enumerate(renditions):
        steps.append(StageStep(
            Stage.CONVERT,
            low + (high - low) * i // count,
            low + (high - low) * (i + 1) // count,
            rendition,
        ))
    steps.append(StageStep(Stage.PUBLISH, *PUBLISH_RANGE))
    steps.append(StageStep(Stage.MANIFEST, *MANIFEST_RANGE))
    return steps


class _Entry:
    __slots__ = ('lock', 'job', 'done')

    def __init__(self, job):
        self.lock = threading.Lock()
        self.job = job
        self.done = threading.Event()


class JobRegistry:
    """
    In-memory job records keyed by resource id.

    Every record has its own lock; mutations replace the frozen Job snapshot
    under that lock, so readers always get a consistent record. The map guard
    only covers membership changes.
    """

    def __init__(self):
        self._entries = {}
        self._guard = threading.Lock()

    def admit(self, job):
        with self._guard:
            entry = self._entries.get(job.resource_id)
            if entry is not None and not entry.job.is_terminal:
                raise AlreadyInProgress(job.resource_id)
            entry = self._entries[job.resource_id] = _Entry(job)
            return entry

    def _entry(self, resource_id):
        with self._guard:
            entry = self._entries.get(resource_id)
        if entry is None:
            raise JobNotFound(resource_id)
        return entry

    def get(self, resource_id):
        return self._entry(resource_id).job

    def update(self, entry, **changes):
        with entry.lock:
            job = entry.job
            if job.is_terminal:
                return job
            if 'progress' in changes:
                changes['progress'] = max(job.progress, min(100, int(changes['progress'])))
            entry.job = replace(job, **changes)
            return entry.job

    def active(self):
        with self._guard:
            entries = list(self._entries.values())
        return [e.job for e in entries if not e.job.is_terminal]

    def wait(self, resource_id, timeout=None):
        entry = self._entry(resource_id)
        entry.done.wait(timeout)
        return entry.job

    def reap(self, cutoff):
        with self._guard:
            expired = [
                rid for rid, e in self._entries.items()
                if e.job.is_terminal and e.job.ended_at and e.job.ended_at < cutoff
            ]
            for rid in expired:
                del self._entries[rid]
        return expired


class JobTracker:
    """
    Runs one background pipeline per admitted resource and exposes its status.
    """

    def __init__(self, engine, progress_log, registry=None, max_workers=2,
                 default_renditions=None, output_prefix='hls'):
        self.engine = engine
        self.progress_log = progress_log
        self.registry = registry or JobRegistry()
        self.default_renditions = resolve_ladder(default_renditions)
        self.output_prefix = output_prefix.rstrip('/')
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='transcode')
        self._listeners = []
        self._reaper = None
        self._stop_reaper = threading.Event()

    def add_listener(self, listener):
        """Register a callable invoked with the terminal Job snapshot of every attempt."""
        self._listeners.append(listener)

    # ── Queries ───────────────────────────────────────────────────────

    def status(self, resource_id) -> Job:
        return self.registry.get(resource_id)

    def list_active(self):
        return self.registry.active()

    def wait(self, resource_id, timeout=None) -> Job:
        return self.registry.wait(resource_id, timeout)

    # ── Admission ─────────────────────────────────────────────────────

    def submit(self, resource_id, source_key, destination_prefix=None, renditions=None) -> Job:
        """
        Admit a conversion and start it in the background.

        Raises AlreadyInProgress if this resource is still processing and
        ValueError for an invalid rendition ladder. Returns the initial snapshot
        without waiting for the pipeline.
        """
        ladder = resolve_ladder(renditions) if renditions else self.default_renditions
        job = Job(
            resource_id=resource_id,
            source_key=source_key,
            destination_prefix=destination_prefix or f"{self.output_prefix}/{resource_id}",
            renditions=tuple(r.name for r in ladder),
        )
        entry = self.registry.admit(job)
        logger.info(f"Encoding job admitted for {resource_id} ({', '.join(job.renditions)})")

        try:
            self._executor.submit(self._run_pipeline, entry, ladder)
        except RuntimeError as e:
            # Executor already shut down
            self._finish(entry, error=e)
            raise
        return job

    # ── Pipeline ──────────────────────────────────────────────────────

    def _run_pipeline(self, entry, ladder):
        job = entry.job
        self.progress_log.append(job.resource_id, 'Video encoding started', 0)
        ctx = {'ladder': ladder, 'local_path': None, 'work_dir': None, 'manifest': None}
        error = None
        try:
            steps = plan_stages(ladder)
            for step in steps:
                self._enter(entry, step)
                self._execute(step, job, ctx)
                if step is not steps[-1]:
                    self._leave(entry, step)
        except Exception as e:
            error = e
            if not isinstance(e, StageError):
                logger.exception(f"Unexpected error in pipeline for {job.resource_id}")
        finally:
            self.engine.cleanup(ctx['local_path'], ctx['work_dir'])

        if error is None:
            result = {
                'manifest': ctx['manifest'],
                'qualities': {
                    r.name: self.engine.playlist_key(job.destination_prefix, r) for r in ladder
                },
            }
            self._finish(entry, result=result)
        else:
            self._finish(entry, error=error)

    def _enter(self, entry, step):
        self.registry.update(entry, stage=step.stage, progress=step.floor)
        self.progress_log.append(entry.job.resource_id, step.label, step.floor)

    def _leave(self, entry, step):
        self.registry.update(entry, progress=step.ceiling)
        self.progress_log.append(entry.job.resource_id, step.label, step.ceiling)

    def _execute(self, step, job, ctx):
        if step.stage is Stage.DOWNLOAD:
            ctx['local_path'] = self.engine.fetch_source(job.resource_id, job.source_key)
            ctx['work_dir'] = self.engine.prepare_workspace(job.resource_id)
        elif step.stage is Stage.CONVERT:
            self.engine.encode_rendition(ctx['local_path'], ctx['work_dir'], step.rendition)
        elif step.stage is Stage.PUBLISH:
            self.engine.publish_renditions(ctx['work_dir'], job.destination_prefix)
        elif step.stage is Stage.MANIFEST:
            ctx['manifest'] = self.engine.publish_manifest(
                ctx['work_dir'], job.destination_prefix, ctx['ladder'],
            )

    def _finish(self, entry, result=None, error=None):
        now = datetime.now(timezone.utc)
        resource_id = entry.job.resource_id
        # Terminal event is written while the job is still processing; a
        # resubmission's events always come after it.
        if error is None:
            self.progress_log.append(resource_id, 'Video encoding completed successfully', 100)
            final = self.registry.update(
                entry, state=JobState.COMPLETED, progress=100, result=result, ended_at=now,
            )
            logger.info(f"✓ Video encoding completed for {resource_id}")
        else:
            self.progress_log.append(resource_id, f"Error: {error}")
            final = self.registry.update(
                entry, state=JobState.FAILED, failure_reason=str(error), ended_at=now,
            )
            logger.error(f"✗ Video encoding failed for {resource_id}: {error}")

        for listener in list(self._listeners):
            try:
                listener(final)
            except Exception as e:
                logger.warning(f"⚠ Job listener failed for {resource_id}: {e}")
        entry.done.set()

    # ── Retention ─────────────────────────────────────────────────────

    def reap(self, retention) -> int:
        """Evict terminal jobs that ended more than `retention` ago (seconds or timedelta)."""
        if not isinstance(retention, timedelta):
            retention = timedelta(seconds=retention)
        expired = self.registry.reap(datetime.now(timezone.utc) - retention)
        for resource_id in expired:
            self.progress_log.forget(resource_id)
        if expired:
            logger.info(f"🧹 Cleaned up {len(expired)} finished jobs")
        return len(expired)

    def start_reaper(self, interval, retention):
        if self._reaper is not None:
            return
        self._stop_reaper.clear()

        def loop():
            while not self._stop_reaper.wait(interval):
                try:
                    self.reap(retention)
                except Exception as e:
                    logger.error(f"Reaper error: {e}")

        self._reaper = threading.Thread(target=loop, name='transcode-reaper', daemon=True)
        self._reaper.start()

    def shutdown(self, wait=True):
        self._stop_reaper.set()
        self._reaper = None
        self._executor.shutdown(wait=wait)
