from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Dict, Any, Union
from enum import Enum
from datetime import datetime, timezone
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_format(value: str) -> str:
    """Lower-case a format name and drop a leading dot ('.JPG' -> 'jpg')"""
    return (value or "").strip().lower().lstrip(".")


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class OperationKind(str, Enum):
    CONVERT = "convert"
    CROP = "crop"
    ROTATE = "rotate"
    RESIZE = "resize"
    COMPRESS = "compress"
    REMOVE_BACKGROUND = "remove-background"
    REMOVE_WATERMARK = "remove-watermark"
    ANNOTATE = "annotate"
    ADD_TEXT = "add-text"
    OCR = "ocr"
    MERGE = "merge"
    IMAGES_TO_PDF = "images-to-pdf"
    COLLAGE = "collage"


class AdapterId(str, Enum):
    OFFICE = "office"
    RASTER_IMAGE = "raster_image"
    IMAGE_CLEANUP = "image_cleanup"
    VECTOR_IMAGE = "vector_image"
    PDF_COMPOSE = "pdf_compose"
    PDF_EDIT = "pdf_edit"
    PDF_RENDER = "pdf_render"
    OCR = "ocr"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    BACKEND_FAILURE = "backend_failure"
    RESOURCE_ERROR = "resource_error"


class JobError(BaseModel):
    kind: ErrorKind
    message: str


class OutputArtifact(BaseModel):
    handle: Optional[str] = None
    filename: Optional[str] = None
    size_bytes: int = 0
    text: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversionJob(BaseModel):
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_format: str
    target_format: str
    operation: OperationKind
    input_ref: str
    options: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    result: Optional[OutputArtifact] = None
    error: Optional[JobError] = None
    user_id: Optional[str] = None
    batch_id: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator('source_format', 'target_format')
    @classmethod
    def validate_format(cls, v):
        v = normalize_format(v)
        if not v:
            raise ValueError('Format must not be empty')
        return v


class StateTransition(BaseModel):
    job_id: str
    old_status: JobStatus
    new_status: JobStatus
    timestamp: datetime = Field(default_factory=_utcnow)
    job: Optional[ConversionJob] = None


class AuditEvent(BaseModel):
    user_id: Optional[str] = None
    action: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class DispatchOutcome(BaseModel):
    job_id: str
    success: bool
    status: JobStatus
    output: Optional[OutputArtifact] = None
    error: Optional[JobError] = None


class BatchItemSuccess(BaseModel):
    job_id: str
    output: OutputArtifact


class BatchItemFailure(BaseModel):
    job_id: str
    kind: ErrorKind
    message: str


class BatchResult(BaseModel):
    batch_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation: OperationKind
    successes: List[BatchItemSuccess] = Field(default_factory=list)
    failures: List[BatchItemFailure] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures)

    @property
    def succeeded(self) -> int:
        return len(self.successes)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def summary(self) -> Dict[str, int]:
        return {
            'total': self.total,
            'succeeded': self.succeeded,
            'failed': self.failed,
        }


class ConversionInput(BaseModel):
    input_ref: str
    job_id: Optional[str] = None


class ConversionRequest(BaseModel):
    operation: OperationKind
    source_format: str
    target_format: str
    inputs: List[ConversionInput] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class SubmissionResponse(BaseModel):
    kind: str  # "single" or "batch"
    outcome: Optional[DispatchOutcome] = None
    batch: Optional[Dict[str, Any]] = None

    @classmethod
    def from_result(cls, result: Union[DispatchOutcome, BatchResult]) -> "SubmissionResponse":
        if isinstance(result, BatchResult):
            data = result.model_dump(mode='json')
            data.update(result.summary())
            return cls(kind="batch", batch=data)
        return cls(kind="single", outcome=result)


class JobResponse(BaseModel):
    job_id: str
    source_format: str
    target_format: str
    operation: OperationKind
    status: JobStatus
    result: Optional[OutputArtifact] = None
    error: Optional[JobError] = None
    batch_id: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_job(cls, job: ConversionJob) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            source_format=job.source_format,
            target_format=job.target_format,
            operation=job.operation,
            status=job.status,
            result=job.result,
            error=job.error,
            batch_id=job.batch_id,
            retry_of=job.retry_of,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at
        )
