"""
Conversion engine modules: capability registry, job tracking, dispatch and backends
"""

from .registry import CapabilityRegistry
from .job_tracker import JobTracker
from .dispatcher import Dispatcher
from .batch_executor import BatchExecutor
from .conversion_service import ConversionService
from .artifact_store import ArtifactStore, LocalArtifactStore
from .events import EventBus, EventSink, LoggingEventSink, WebhookAuditSink

__all__ = [
    'CapabilityRegistry',
    'JobTracker',
    'Dispatcher',
    'BatchExecutor',
    'ConversionService',
    'ArtifactStore',
    'LocalArtifactStore',
    'EventBus',
    'EventSink',
    'LoggingEventSink',
    'WebhookAuditSink'
]
