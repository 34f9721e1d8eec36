import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set
import logging

from ..errors import InvalidStateTransition, JobNotFound, ValidationError
from ..models import (
    ConversionJob, ErrorKind, JobError, JobStatus, OutputArtifact, StateTransition
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobTracker:
    """Owns the status of every conversion job.

    Each job moves pending -> processing -> completed | failed. A pending job
    may also fail directly (validation, abandonment) without ever reaching
    processing. Terminal states are final. Transitions are atomic per job and
    callers only ever receive copies, so status cannot be changed around the
    tracker.
    """

    def __init__(self):
        self._jobs: Dict[str, ConversionJob] = {}
        self._lock = threading.Lock()

    def create(self, job: ConversionJob) -> ConversionJob:
        """Register a new pending job"""
        return self.create_all([job])[0]

    def create_all(self, jobs: Iterable[ConversionJob]) -> List[ConversionJob]:
        """
        Register several pending jobs at once

        Either every job is registered or, when any of them is not pending or
        reuses a known id, none is.

        Raises:
            ValidationError: If a job is not pending or its id is taken
        """
        jobs = list(jobs)
        for job in jobs:
            if job.status != JobStatus.PENDING:
                raise ValidationError(
                    f"New job {job.job_id} must be pending, got {job.status.value}", field='status'
                )

        with self._lock:
            seen = set()
            for job in jobs:
                if job.job_id in self._jobs or job.job_id in seen:
                    raise ValidationError(f"Job {job.job_id} already exists", field='inputs')
                seen.add(job.job_id)

            for job in jobs:
                self._jobs[job.job_id] = job.model_copy(deep=True)

        for job in jobs:
            logger.info(f"Created job {job.job_id} ({job.operation.value} {job.source_format} -> {job.target_format})")
        return [job.model_copy(deep=True) for job in jobs]

    def exists(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def get(self, job_id: str) -> ConversionJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job.model_copy(deep=True)

    def status(self, job_id: str) -> JobStatus:
        return self.get(job_id).status

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        batch_id: Optional[str] = None
    ) -> List[ConversionJob]:
        with self._lock:
            jobs = [
                job.model_copy(deep=True) for job in self._jobs.values()
                if (status is None or job.status == status)
                and (batch_id is None or job.batch_id == batch_id)
            ]
        return sorted(jobs, key=lambda j: j.created_at)

    def mark_processing(self, job_id: str) -> StateTransition:
        def apply(job: ConversionJob):
            job.started_at = datetime.now(timezone.utc)

        return self._transition(job_id, JobStatus.PROCESSING, apply)

    def mark_completed(self, job_id: str, output: OutputArtifact) -> StateTransition:
        def apply(job: ConversionJob):
            job.result = output.model_copy(deep=True)
            job.error = None
            job.completed_at = datetime.now(timezone.utc)

        return self._transition(job_id, JobStatus.COMPLETED, apply)

    def mark_failed(self, job_id: str, error: JobError) -> StateTransition:
        def apply(job: ConversionJob):
            job.error = error
            job.result = None
            job.completed_at = datetime.now(timezone.utc)

        return self._transition(job_id, JobStatus.FAILED, apply)

    def abandon(self, job_id: str) -> StateTransition:
        """Fail a job that was never dispatched"""
        error = JobError(kind=ErrorKind.VALIDATION, message="Job abandoned before dispatch")

        def apply(job: ConversionJob):
            job.error = error
            job.completed_at = datetime.now(timezone.utc)

        return self._transition(
            job_id, JobStatus.FAILED, apply, allowed_from={JobStatus.PENDING}, requested="abandoned"
        )

    def retry(self, job_id: str, batch_id: Optional[str] = None) -> ConversionJob:
        """Create a new pending job that reuses a failed job's inputs and options"""
        original = self.get(job_id)
        if original.status != JobStatus.FAILED:
            raise InvalidStateTransition(job_id, original.status.value, "retried")

        retry_job = ConversionJob(
            job_id=str(uuid.uuid4()),
            source_format=original.source_format,
            target_format=original.target_format,
            operation=original.operation,
            input_ref=original.input_ref,
            options=dict(original.options),
            user_id=original.user_id,
            batch_id=batch_id,
            retry_of=original.job_id
        )
        return self.create(retry_job)

    def _require(self, job_id: str) -> ConversionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _transition(
        self,
        job_id: str,
        new_status: JobStatus,
        apply: Callable[[ConversionJob], None],
        allowed_from: Optional[Set[JobStatus]] = None,
        requested: Optional[str] = None
    ) -> StateTransition:
        with self._lock:
            job = self._require(job_id)
            old_status = job.status

            if new_status not in ALLOWED_TRANSITIONS[old_status] or (
                allowed_from is not None and old_status not in allowed_from
            ):
                raise InvalidStateTransition(job_id, old_status.value, requested or new_status.value)

            job.status = new_status
            apply(job)
            snapshot = job.model_copy(deep=True)

        return StateTransition(
            job_id=job_id,
            old_status=old_status,
            new_status=new_status,
            job=snapshot
        )
