import uuid
from typing import Any, Dict, List, Optional, Union
import logging

from ..config import Settings
from ..errors import InvalidStateTransition, ValidationError
from ..models import (
    AdapterId, AuditEvent, BatchResult, ConversionJob, ConversionRequest, DispatchOutcome,
    JobStatus, normalize_format
)
from .artifact_store import ArtifactStore
from .backend import BackendAdapter
from .batch_executor import BatchExecutor
from .dispatcher import Dispatcher
from .document_processor import DocumentProcessor
from .events import EventBus, audit_action
from .image_processor import ImageCleanupProcessor, ImageProcessor
from .job_tracker import JobTracker
from .ocr_processor import OcrProcessor
from .pdf_processor import PdfComposeProcessor, PdfEditProcessor, PdfRenderProcessor
from .registry import CapabilityRegistry
from .validation import policy_for
from .vector_processor import VectorProcessor

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = (
    DocumentProcessor,
    ImageProcessor,
    ImageCleanupProcessor,
    VectorProcessor,
    PdfComposeProcessor,
    PdfEditProcessor,
    PdfRenderProcessor,
    OcrProcessor,
)


def build_adapters(store: ArtifactStore, settings: Settings) -> Dict[AdapterId, BackendAdapter]:
    """Instantiate one adapter per backend family"""
    return {cls.adapter_id: cls(store, settings) for cls in ADAPTER_CLASSES}


class ConversionService:
    """Submission and query surface of the conversion engine.

    Turns requests into tracked jobs, routes them through the dispatcher or the
    batch executor, and emits one audit event per completed operation.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        tracker: JobTracker,
        dispatcher: Dispatcher,
        batch_executor: BatchExecutor,
        events: Optional[EventBus] = None
    ):
        self.registry = registry
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.batch_executor = batch_executor
        self.events = events or dispatcher.events

    @classmethod
    def create(
        cls,
        settings: Settings,
        store: ArtifactStore,
        events: Optional[EventBus] = None,
        registry: Optional[CapabilityRegistry] = None
    ) -> "ConversionService":
        """Wire the engine together from settings"""
        registry = registry or CapabilityRegistry()
        events = events or EventBus()
        tracker = JobTracker()
        dispatcher = Dispatcher(registry, build_adapters(store, settings), tracker, events)
        batch_executor = BatchExecutor(
            dispatcher,
            tracker,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            max_batch_size=settings.max_batch_size
        )
        return cls(registry, tracker, dispatcher, batch_executor, events)

    # Capability queries

    def list_supported_targets(self, source_format: str) -> List[str]:
        return sorted(self.registry.supported_targets(source_format))

    def list_capabilities(self) -> Dict[str, List[str]]:
        return self.registry.list_capabilities()

    # Job queries

    def get_job(self, job_id: str) -> ConversionJob:
        return self.tracker.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[ConversionJob]:
        return self.tracker.list_jobs(status=status)

    # Submission

    def build_jobs(self, request: ConversionRequest) -> List[ConversionJob]:
        """
        Expand a request into one pending job per input, in input order

        Raises:
            ValidationError: If the request has no inputs, lacks a format or
                names a job id the tracker already knows
        """
        if not request.inputs:
            raise ValidationError("At least one input is required", field='inputs')

        source_format = normalize_format(request.source_format)
        target_format = normalize_format(request.target_format)
        if not source_format or not target_format:
            raise ValidationError("Source and target formats are required", field='format')

        jobs = []
        for item in request.inputs:
            fields: Dict[str, Any] = {
                'source_format': source_format,
                'target_format': target_format,
                'operation': request.operation,
                'input_ref': item.input_ref,
                'options': dict(request.options),
                'user_id': request.user_id,
            }
            if item.job_id:
                if self.tracker.exists(item.job_id):
                    raise ValidationError(f"Job {item.job_id} already exists", field='inputs')
                fields['job_id'] = item.job_id
            jobs.append(ConversionJob(**fields))
        return jobs

    async def submit(self, request: ConversionRequest) -> Union[DispatchOutcome, BatchResult]:
        """
        Submit a conversion request

        A single input for a per-item operation is dispatched directly and
        returns its DispatchOutcome. Everything else runs as a batch and
        returns a BatchResult.

        Raises:
            ValidationError: If the request cannot form a valid job or batch;
                no job is created in that case
        """
        jobs = self.build_jobs(request)
        operation = request.operation

        if len(jobs) == 1 and not policy_for(operation).aggregate:
            job = self.tracker.create(jobs[0])
            outcome = await self.dispatcher.execute(job)
            if outcome.success:
                await self._audit_job(job, outcome)
            return outcome

        self.batch_executor.validate_batch(jobs)
        return await self._run_batch(jobs)

    async def retry(self, job_id: str) -> Union[DispatchOutcome, BatchResult]:
        """
        Re-run a failed job as a new job that shares its inputs and options

        A failed member of an aggregate operation is retried together with
        the rest of its group, since the group only has one shared output.
        """
        original = self.tracker.get(job_id)
        if original.status != JobStatus.FAILED:
            raise InvalidStateTransition(job_id, original.status.value, "retried")

        if policy_for(original.operation).aggregate and original.batch_id:
            members = self.tracker.list_jobs(batch_id=original.batch_id)
            for member in members:
                if member.status != JobStatus.FAILED:
                    raise InvalidStateTransition(member.job_id, member.status.value, "retried")

            batch_id = str(uuid.uuid4())
            retries = [self.tracker.retry(member.job_id, batch_id=batch_id) for member in members]
            logger.info(f"Retrying group {original.batch_id} as {batch_id}")
            return await self._execute_batch(retries, batch_id)

        retry_job = self.tracker.retry(job_id)
        logger.info(f"Retrying job {job_id} as {retry_job.job_id}")

        outcome = await self.dispatcher.execute(retry_job)
        if outcome.success:
            await self._audit_job(retry_job, outcome)
        return outcome

    async def abandon(self, job_id: str) -> ConversionJob:
        """Fail a pending job before it is dispatched"""
        transition = self.tracker.abandon(job_id)
        await self.events.publish_transition(transition)
        logger.info(f"Abandoned job {job_id}")
        return self.tracker.get(job_id)

    async def _run_batch(self, jobs: List[ConversionJob]) -> BatchResult:
        batch_id = str(uuid.uuid4())
        for job in jobs:
            job.batch_id = batch_id
        registered = self.tracker.create_all(jobs)

        return await self._execute_batch(registered, batch_id)

    async def _execute_batch(self, jobs: List[ConversionJob], batch_id: str) -> BatchResult:
        result = await self.batch_executor.execute_batch(jobs, batch_id=batch_id)
        lead = jobs[0]

        if policy_for(lead.operation).aggregate:
            if result.succeeded:
                output = result.successes[0].output
                await self._publish_audit(lead.user_id, audit_action(lead.operation), {
                    'batch_id': batch_id,
                    'job_ids': [job.job_id for job in jobs],
                    'source_format': lead.source_format,
                    'target_format': lead.target_format,
                    'input_count': len(jobs),
                    'output': output.filename,
                })
        else:
            await self._publish_audit(lead.user_id, audit_action(lead.operation, batch=True), {
                'batch_id': batch_id,
                'source_format': lead.source_format,
                'target_format': lead.target_format,
                **result.summary(),
            })

        return result

    async def _audit_job(self, job: ConversionJob, outcome: DispatchOutcome):
        output = outcome.output
        await self._publish_audit(job.user_id, audit_action(job.operation), {
            'job_id': job.job_id,
            'source_format': job.source_format,
            'target_format': job.target_format,
            'output': output.filename if output else None,
        })

    async def _publish_audit(self, user_id: Optional[str], action: str, metadata: Dict[str, Any]):
        await self.events.publish_audit(AuditEvent(user_id=user_id, action=action, metadata=metadata))
