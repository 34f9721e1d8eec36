import asyncio
import uuid
from typing import List, Optional
import logging

from ..errors import ValidationError
from ..models import (
    BatchItemFailure, BatchItemSuccess, BatchResult, ConversionJob, DispatchOutcome,
    ErrorKind, JobError, JobStatus
)
from .dispatcher import Dispatcher, to_job_error
from .job_tracker import JobTracker
from .validation import policy_for

logger = logging.getLogger(__name__)


class BatchExecutor:
    """Runs an ordered collection of jobs through the dispatcher.

    Batch preconditions are checked up front and violations raise
    ValidationError before any job runs. After that the call never raises:
    each item's failure is recorded in the BatchResult and the remaining items
    still run. Per-item jobs share a bounded pool; aggregate operations are a
    single dispatch over all members.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        tracker: JobTracker,
        max_concurrent_jobs: int = 4,
        max_batch_size: int = 100
    ):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")

        self.dispatcher = dispatcher
        self.tracker = tracker
        self.max_concurrent_jobs = max_concurrent_jobs
        self.max_batch_size = max_batch_size

    def validate_batch(self, jobs: List[ConversionJob]):
        """Raise ValidationError if the jobs cannot form one batch"""
        if not jobs:
            raise ValidationError("Batch must contain at least one job", field='inputs')

        lead = jobs[0]
        policy = policy_for(lead.operation)

        if len(jobs) < policy.min_items:
            raise ValidationError(
                f"Operation '{lead.operation.value}' requires at least {policy.min_items} inputs, got {len(jobs)}",
                field='inputs'
            )

        if len(jobs) > self.max_batch_size:
            raise ValidationError(
                f"Batch size {len(jobs)} exceeds the maximum of {self.max_batch_size}",
                field='inputs'
            )

        for job in jobs[1:]:
            if job.operation != lead.operation:
                raise ValidationError("All jobs in a batch must share the same operation", field='operation')
            if job.source_format != lead.source_format or job.target_format != lead.target_format:
                raise ValidationError("All jobs in a batch must share source and target formats", field='format')

        job_ids = [job.job_id for job in jobs]
        if len(set(job_ids)) != len(job_ids):
            raise ValidationError("Job ids in a batch must be unique", field='inputs')

    async def execute_batch(
        self,
        jobs: List[ConversionJob],
        batch_id: Optional[str] = None
    ) -> BatchResult:
        """
        Execute a batch of pending jobs

        Args:
            jobs: Ordered jobs already registered with the tracker
            batch_id: Identifier for the result; generated when omitted

        Returns:
            BatchResult with successes and failures in input order

        Raises:
            ValidationError: If the batch preconditions are violated
        """
        self.validate_batch(jobs)

        batch_id = batch_id or str(uuid.uuid4())
        operation = jobs[0].operation
        logger.info(f"Starting batch {batch_id}: {len(jobs)} {operation.value} job(s)")

        if policy_for(operation).aggregate:
            outcomes = await self._run_group(jobs)
        else:
            semaphore = asyncio.Semaphore(self.max_concurrent_jobs)

            async def run(job: ConversionJob) -> DispatchOutcome:
                async with semaphore:
                    return await self._run_item(job)

            outcomes = await asyncio.gather(*(run(job) for job in jobs))

        result = BatchResult(batch_id=batch_id, operation=operation)
        for outcome in outcomes:
            if outcome.success:
                result.successes.append(BatchItemSuccess(job_id=outcome.job_id, output=outcome.output))
            else:
                result.failures.append(BatchItemFailure(
                    job_id=outcome.job_id,
                    kind=outcome.error.kind,
                    message=outcome.error.message
                ))

        logger.info(f"Completed batch {batch_id}: {result.succeeded} succeeded, {result.failed} failed")
        return result

    async def _run_item(self, job: ConversionJob) -> DispatchOutcome:
        try:
            return await self.dispatcher.execute(job)
        except Exception as e:
            logger.error(f"Unexpected error dispatching job {job.job_id}: {str(e)}")
            return await self._recover(job.job_id, e)

    async def _run_group(self, jobs: List[ConversionJob]) -> List[DispatchOutcome]:
        try:
            return await self.dispatcher.execute_group(jobs)
        except Exception as e:
            logger.error(f"Unexpected error dispatching job group {[job.job_id for job in jobs]}: {str(e)}")
            return [await self._recover(job.job_id, e) for job in jobs]

    async def _recover(self, job_id: str, error: Exception) -> DispatchOutcome:
        """Settle a job whose dispatch escaped with an exception"""
        job = self.tracker.get(job_id)

        if not job.status.is_terminal:
            transition = self.tracker.mark_failed(job_id, to_job_error(error))
            await self.dispatcher.events.publish_transition(transition)
            job = self.tracker.get(job_id)

        if job.status == JobStatus.COMPLETED:
            return DispatchOutcome(job_id=job_id, success=True, status=job.status, output=job.result)

        return DispatchOutcome(
            job_id=job_id,
            success=False,
            status=JobStatus.FAILED,
            error=job.error or JobError(kind=ErrorKind.BACKEND_FAILURE, message=str(error))
        )
