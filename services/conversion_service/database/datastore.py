from typing import Any, Dict, List, Optional
import logging
from google.cloud import datastore

from ..models import AuditEvent, ConversionJob, JobStatus, StateTransition
from ..services.events import EventSink

logger = logging.getLogger(__name__)


class DatastoreClient(EventSink):
    """Google Cloud Datastore persistence for conversion jobs and audit events.

    Registered on the event bus, it upserts the job row on every state
    transition and appends one entity per audit event.
    """

    JOB_KIND = "ConversionJob"
    AUDIT_KIND = "ConversionAudit"

    # Large or free-form properties that are never filtered on
    UNINDEXED_JOB_FIELDS = ('options', 'result', 'error', 'input_ref')

    def __init__(
        self,
        project_id: Optional[str] = None,
        namespace: str = "conversion-service",
        client: Optional[datastore.Client] = None
    ):
        self.project_id = project_id
        self.namespace = namespace
        self.client = client or datastore.Client(project=project_id, namespace=namespace)

    async def publish_transition(self, event: StateTransition) -> None:
        if event.job is None:
            logger.debug(f"Transition for job {event.job_id} carries no snapshot, skipping persistence")
            return
        await self.save_job(event.job)

    async def publish_audit(self, event: AuditEvent) -> None:
        entity = datastore.Entity(
            key=self.client.key(self.AUDIT_KIND),
            exclude_from_indexes=('metadata',)
        )
        entity.update({
            'user_id': event.user_id,
            'action': event.action,
            'metadata': event.model_dump(mode='json')['metadata'],
            'timestamp': event.timestamp,
        })
        self.client.put(entity)

    async def save_job(self, job: ConversionJob) -> bool:
        """Upsert a job row"""
        try:
            key = self.client.key(self.JOB_KIND, job.job_id)
            entity = datastore.Entity(key=key, exclude_from_indexes=self.UNINDEXED_JOB_FIELDS)
            entity.update(self._job_to_properties(job))

            self.client.put(entity)
            return True

        except Exception as e:
            logger.error(f"Error saving job {job.job_id}: {str(e)}")
            return False

    async def get_job(self, job_id: str) -> Optional[ConversionJob]:
        """Get job from datastore"""
        try:
            entity = self.client.get(self.client.key(self.JOB_KIND, job_id))
            if not entity:
                return None

            return self._entity_to_job(entity)

        except Exception as e:
            logger.error(f"Error getting job {job_id}: {str(e)}")
            return None

    async def query_jobs(
        self,
        status: Optional[JobStatus] = None,
        batch_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[ConversionJob]:
        """Query jobs, newest first"""
        try:
            query = self.client.query(kind=self.JOB_KIND)

            if status:
                query.add_filter('status', '=', status.value)
            if batch_id:
                query.add_filter('batch_id', '=', batch_id)

            query.order = ['-created_at']

            jobs = []
            for entity in query.fetch(limit=limit, offset=offset):
                job = self._entity_to_job(entity)
                if job:
                    jobs.append(job)

            return jobs

        except Exception as e:
            logger.error(f"Error querying jobs: {str(e)}")
            return []

    async def delete_job(self, job_id: str) -> bool:
        try:
            self.client.delete(self.client.key(self.JOB_KIND, job_id))
            return True

        except Exception as e:
            logger.error(f"Error deleting job {job_id}: {str(e)}")
            return False

    def _job_to_properties(self, job: ConversionJob) -> Dict[str, Any]:
        properties = job.model_dump(mode='json')

        # Keep timestamps native so they sort and filter as datetimes
        properties['created_at'] = job.created_at
        properties['started_at'] = job.started_at
        properties['completed_at'] = job.completed_at
        return properties

    def _entity_to_job(self, entity: datastore.Entity) -> Optional[ConversionJob]:
        try:
            return ConversionJob.model_validate(dict(entity))
        except Exception as e:
            logger.error(f"Error converting entity to job: {str(e)}")
            return None

    async def close(self):
        """Close datastore client"""
        try:
            self.client.close()
        except Exception as e:
            logger.error(f"Error closing datastore client: {str(e)}")
