import io
import uuid
import pytest
import tempfile
from pathlib import Path
from typing import Callable, List, Optional
from unittest.mock import Mock, AsyncMock

from services.conversion_service.config import Settings
from services.conversion_service.database.datastore import DatastoreClient
from services.conversion_service.models import AdapterId, ConversionJob, OperationKind, OutputArtifact
from services.conversion_service.services.artifact_store import LocalArtifactStore
from services.conversion_service.services.backend import BackendAdapter, TransformRequest
from services.conversion_service.services.batch_executor import BatchExecutor
from services.conversion_service.services.dispatcher import Dispatcher
from services.conversion_service.services.events import EventBus, EventSink
from services.conversion_service.services.job_tracker import JobTracker
from services.conversion_service.services.registry import CapabilityRegistry


class RecordingSink(EventSink):
    """Event sink that keeps everything it receives"""

    def __init__(self):
        self.transitions = []
        self.audits = []

    async def publish_transition(self, event):
        self.transitions.append(event)

    async def publish_audit(self, event):
        self.audits.append(event)


class StubAdapter(BackendAdapter):
    """Backend adapter with scripted behaviour that records its calls"""

    def __init__(
        self,
        adapter_id: AdapterId = AdapterId.RASTER_IMAGE,
        handler: Optional[Callable] = None,
        preflight_error: Optional[Exception] = None
    ):
        self.adapter_id = adapter_id
        self.handler = handler
        self.preflight_error = preflight_error
        self.calls: List[TransformRequest] = []
        self.preflight_calls: List[TransformRequest] = []

    async def preflight(self, request):
        self.preflight_calls.append(request)
        if self.preflight_error:
            raise self.preflight_error

    async def transform(self, request):
        self.calls.append(request)
        if self.handler:
            result = self.handler(request)
            if hasattr(result, '__await__'):
                result = await result
            return result
        return OutputArtifact(
            handle=f"out/{'+'.join(request.input_refs)}.{request.target_format}",
            filename=f"converted.{request.target_format}",
            size_bytes=10
        )


def make_job(
    input_ref: str = "in/file.jpg",
    source_format: str = "jpg",
    target_format: str = "png",
    operation: OperationKind = OperationKind.CONVERT,
    **kwargs
) -> ConversionJob:
    return ConversionJob(
        input_ref=input_ref,
        source_format=source_format,
        target_format=target_format,
        operation=operation,
        **kwargs
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def test_settings(temp_dir):
    """Create test settings"""
    return Settings(
        environment="testing",
        google_cloud_project="test-project",
        storage_dir=str(temp_dir / "artifacts"),
        temp_dir=str(temp_dir / "work"),
        max_concurrent_jobs=2,
        max_batch_size=10,
        collage_cell_size=100
    )


@pytest.fixture
def artifact_store(test_settings):
    return LocalArtifactStore(test_settings.storage_dir)


@pytest.fixture
def put_artifact(artifact_store):
    """Place raw bytes in the artifact store and return the handle"""
    def _put(data: bytes, filename: str = "input.bin") -> str:
        handle = f"{uuid.uuid4().hex}/{filename}"
        path = artifact_store.path_for(handle)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return handle

    return _put


@pytest.fixture
def registry():
    return CapabilityRegistry()


@pytest.fixture
def tracker():
    return JobTracker()


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def event_bus(recording_sink):
    return EventBus([recording_sink])


@pytest.fixture
def make_dispatcher(registry, tracker, event_bus):
    """Build a dispatcher over the given adapters"""
    def _make(*adapters: BackendAdapter) -> Dispatcher:
        return Dispatcher(registry, {a.adapter_id: a for a in adapters}, tracker, event_bus)

    return _make


@pytest.fixture
def make_executor(tracker):
    def _make(dispatcher: Dispatcher, max_concurrent_jobs: int = 2, max_batch_size: int = 10) -> BatchExecutor:
        return BatchExecutor(dispatcher, tracker, max_concurrent_jobs, max_batch_size)

    return _make


@pytest.fixture
def mock_datastore_client():
    """Create a mock datastore client"""
    client = Mock(spec=DatastoreClient)
    client.publish_transition = AsyncMock()
    client.publish_audit = AsyncMock()
    client.save_job = AsyncMock(return_value=True)
    client.get_job = AsyncMock(return_value=None)
    client.query_jobs = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


def image_bytes(size=(100, 100), color='red', fmt='JPEG', mode='RGB') -> bytes:
    from PIL import Image

    buffer = io.BytesIO()
    Image.new(mode, size, color=color).save(buffer, fmt)
    return buffer.getvalue()


def pdf_bytes(pages: int = 1, label: str = "Test PDF Document") -> bytes:
    from reportlab.pdfgen import canvas
    from reportlab.lib.pagesizes import letter

    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    for page in range(pages):
        c.drawString(100, 750, f"{label} page {page + 1}")
        c.drawString(100, 730, "This is a test PDF for conversion.")
        c.showPage()
    c.save()
    return buffer.getvalue()


@pytest.fixture
def sample_image_bytes():
    """100x100 red JPEG"""
    return image_bytes()


@pytest.fixture
def sample_pdf_bytes():
    """Two-page PDF"""
    return pdf_bytes(pages=2)
