"""
Conversion job queue.

Jobs are admitted in batches (at most MAX_PENDING waiting at once) and sent to
the API one at a time, in the order they were added. Every failure is recorded
on the job it belongs to; retries are always explicit.

All methods are meant to be called from a single event loop. process_queue()
only yields while awaiting a conversion call, so the job list never needs a lock.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, Union

from common import config
from common.job_schema import (
    BytesSource,
    ConversionRequest,
    InlineResult,
    Job,
    JobStatus,
    RemoteResult,
    StagedSource,
    TargetFormat,
)
from worker.collaborators import convert_in_process
from worker.previews import PreviewStore

logger = logging.getLogger(__name__)

LocalConverter = Callable[[BytesSource, TargetFormat, int], Awaitable[InlineResult]]

FINISHED = (JobStatus.COMPLETED, JobStatus.ERROR)


def queue_full_message(limit: int) -> str:
    return f"Queue limit reached (max {limit} pending items). Please wait for current items to complete."


def partial_admission_message(admitted: int) -> str:
    return f"Only {admitted} item{'' if admitted == 1 else 's'} added. Queue limit reached."


class ConversionQueue:
    """
    `client` needs two coroutine methods, convert_small(source, format, quality)
    and convert_large(key, format, quality, filename); ConversionClient is the
    real one.
    """

    def __init__(self, client, previews: Optional[PreviewStore] = None,
                 max_pending: int = config.MAX_PENDING,
                 local_converter: LocalConverter = convert_in_process):
        self._client = client
        self._previews = previews
        self._local_converter = local_converter
        self.max_pending = max_pending
        self._jobs: List[Job] = []
        self._error: Optional[str] = None
        self._processing = False

    # ---------- read access ----------

    @property
    def jobs(self) -> Tuple[Job, ...]:
        return tuple(self._jobs)

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def pending_count(self) -> int:
        return sum(1 for job in self._jobs if job.status == JobStatus.PENDING)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_pending - self.pending_count)

    def get_job(self, job_id: str) -> Optional[Job]:
        return next((job for job in self._jobs if job.id == job_id), None)

    def _holds(self, job: Job) -> bool:
        return any(j is job for j in self._jobs)

    # ---------- user operations ----------

    def add_jobs(self, requests: Iterable[Union[ConversionRequest, dict]]) -> List[Job]:
        """
        Admits as many requests as there are free pending slots, in order.
        The rest are dropped and reported through `error`; callers resubmit them.
        """
        batch = [r if isinstance(r, ConversionRequest) else ConversionRequest(**r) for r in requests]
        if not batch:
            return []

        slots = self.max_pending - self.pending_count
        if slots <= 0:
            self._error = queue_full_message(self.max_pending)
            logger.warning(f"Rejected {len(batch)} item(s): queue full")
            return []

        admitted = [
            Job(source=request.source, target_format=request.target_format, quality=request.quality)
            for request in batch[:slots]
        ]
        self._jobs.extend(admitted)

        # Previews are allocated once the jobs are held, so remove/clear can always release them
        if self._previews is not None:
            for job in admitted:
                if isinstance(job.source, BytesSource):
                    job.preview = self._previews.allocate(job.id, job.source.data)

        if len(batch) > slots:
            self._error = partial_admission_message(slots)
            logger.warning(f"Admitted {slots} of {len(batch)} item(s)")
        else:
            self._error = None
        return admitted

    def _release(self, job: Job) -> None:
        if self._previews is not None and job.preview is not None:
            self._previews.release(job.id)
        job.preview = None

    def remove_job(self, job_id: str) -> None:
        job = self.get_job(job_id)
        if job is None:
            return
        self._jobs = [j for j in self._jobs if j is not job]
        self._release(job)
        self._error = None

    def clear_completed(self) -> None:
        finished = [job for job in self._jobs if job.status in FINISHED]
        self._jobs = [job for job in self._jobs if job.status not in FINISHED]
        for job in finished:
            self._release(job)
        self._error = None

    def clear_all(self) -> None:
        jobs, self._jobs = self._jobs, []
        for job in jobs:
            self._release(job)
        self._error = None

    def clear_error(self) -> None:
        self._error = None

    def retry_job(self, job_id: str, quality: Optional[int] = None) -> None:
        """Puts a finished job back to pending. Jobs in flight are left alone."""
        job = self.get_job(job_id)
        if job is None or job.status == JobStatus.PROCESSING:
            return
        job.reset(quality)

    # ---------- processing ----------

    async def _dispatch(self, job: Job, local_mode: bool) -> Union[InlineResult, RemoteResult]:
        source = job.source
        if isinstance(source, StagedSource):
            return await self._client.convert_large(source.key, job.target_format, job.quality, source.filename)
        if local_mode:
            return await self._local_converter(source, job.target_format, job.quality)
        return await self._client.convert_small(source, job.target_format, job.quality)

    async def process_queue(self, local_mode: bool = False) -> None:
        """
        Converts every job that is pending right now, one after another.
        Jobs added during the run wait for the next call. A second call while
        a run is in flight returns immediately.
        """
        if self._processing:
            return
        self._processing = True
        try:
            for job in [j for j in self._jobs if j.status == JobStatus.PENDING]:
                # Removed or already handled since the snapshot
                if not self._holds(job) or job.status != JobStatus.PENDING:
                    continue
                await self._process_one(job, local_mode)
        finally:
            self._processing = False

    async def _process_one(self, job: Job, local_mode: bool) -> None:
        job.start()
        logger.info(f"Processing job {job.id} -> {job.target_format.value} q={job.quality}")
        try:
            result = await self._dispatch(job, local_mode)
        except asyncio.CancelledError:
            if self._holds(job):
                job.fail("Cancelled")
            raise
        except Exception as e:
            if self._holds(job):
                job.fail(str(e) or "Unknown error")
                logger.error(f"Failed job {job.id}: {job.error}")
            return

        if not self._holds(job):
            logger.info(f"Discarding result for removed job {job.id}")
            return
        job.complete(result)
        logger.info(f"Processed job {job.id}")
