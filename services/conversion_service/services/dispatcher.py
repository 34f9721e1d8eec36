from typing import Dict, List, Optional
import logging

from ..errors import BackendFailure, ConversionError, UnsupportedOperation, ValidationError
from ..models import (
    AdapterId, ConversionJob, DispatchOutcome, ErrorKind, JobError, JobStatus, OutputArtifact
)
from .backend import BackendAdapter, TransformRequest
from .events import EventBus
from .job_tracker import JobTracker
from .registry import CapabilityRegistry
from .validation import validate_options

logger = logging.getLogger(__name__)


def to_job_error(error: Exception) -> JobError:
    """Normalise any exception into the per-job error record"""
    if isinstance(error, ConversionError):
        return JobError(kind=error.kind, message=error.message)
    return JobError(kind=ErrorKind.BACKEND_FAILURE, message=str(error) or type(error).__name__)


class Dispatcher:
    """Routes jobs to backend adapters and normalises their results.

    Whatever the adapter does, the job ends in a terminal state that matches
    the returned outcome. Validation failures fail the job straight from
    pending; everything else fails it from processing.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        adapters: Dict[AdapterId, BackendAdapter],
        tracker: JobTracker,
        events: Optional[EventBus] = None
    ):
        self.registry = registry
        self.adapters = dict(adapters)
        self.tracker = tracker
        self.events = events or EventBus()

    async def execute(self, job: ConversionJob) -> DispatchOutcome:
        """
        Dispatch a single job

        Args:
            job: A pending job already registered with the tracker

        Returns:
            DispatchOutcome matching the job's terminal state
        """
        outcomes = await self._dispatch([job])
        return outcomes[0]

    async def execute_group(self, jobs: List[ConversionJob]) -> List[DispatchOutcome]:
        """
        Dispatch an aggregate operation (merge, images-to-pdf, collage)

        The adapter is invoked once over the ordered member inputs; every
        member job shares the single outcome.

        Returns:
            One outcome per member job, in input order
        """
        if not jobs:
            raise ValidationError("A job group must contain at least one job")
        return await self._dispatch(jobs)

    async def _dispatch(self, jobs: List[ConversionJob]) -> List[DispatchOutcome]:
        lead = jobs[0]
        job_ids = [job.job_id for job in jobs]
        request = TransformRequest(
            input_refs=[job.input_ref for job in jobs],
            operation=lead.operation,
            source_format=lead.source_format,
            target_format=lead.target_format,
            options=dict(lead.options)
        )

        try:
            validate_options(request.operation, request.options)
        except ValidationError as e:
            logger.warning(f"Rejected options for {request.operation.value} job(s) {job_ids}: {e.message}")
            return await self._fail(job_ids, e)

        adapter_id = self.registry.resolve(request.source_format, request.target_format, request.operation)
        if adapter_id is None:
            await self._mark_processing(job_ids)
            error = UnsupportedOperation(request.source_format, request.target_format, request.operation.value)
            logger.warning(error.message)
            return await self._fail(job_ids, error)

        adapter = self.adapters.get(adapter_id)
        if adapter is None:
            await self._mark_processing(job_ids)
            return await self._fail(
                job_ids, BackendFailure(f"No backend available for adapter '{adapter_id.value}'")
            )

        try:
            await adapter.preflight(request)
        except ValidationError as e:
            logger.warning(f"Preflight rejected job(s) {job_ids}: {e.message}")
            return await self._fail(job_ids, e)
        except Exception as e:
            logger.error(f"Preflight error for job(s) {job_ids} on {adapter_id.value}: {str(e)}")
            await self._mark_processing(job_ids)
            return await self._fail(job_ids, e)

        await self._mark_processing(job_ids)

        try:
            output = await adapter.transform(request)
        except Exception as e:
            logger.error(f"Backend {adapter_id.value} failed job(s) {job_ids}: {str(e)}")
            return await self._fail(job_ids, e)

        return await self._complete(job_ids, output)

    async def _mark_processing(self, job_ids: List[str]):
        for job_id in job_ids:
            transition = self.tracker.mark_processing(job_id)
            await self.events.publish_transition(transition)

    async def _complete(self, job_ids: List[str], output: OutputArtifact) -> List[DispatchOutcome]:
        outcomes = []
        for job_id in job_ids:
            transition = self.tracker.mark_completed(job_id, output)
            await self.events.publish_transition(transition)
            outcomes.append(DispatchOutcome(
                job_id=job_id,
                success=True,
                status=JobStatus.COMPLETED,
                output=output
            ))

        logger.info(f"Completed job(s) {job_ids}")
        return outcomes

    async def _fail(self, job_ids: List[str], error: Exception) -> List[DispatchOutcome]:
        job_error = to_job_error(error)
        outcomes = []
        for job_id in job_ids:
            transition = self.tracker.mark_failed(job_id, job_error)
            await self.events.publish_transition(transition)
            outcomes.append(DispatchOutcome(
                job_id=job_id,
                success=False,
                status=JobStatus.FAILED,
                error=job_error
            ))
        return outcomes
