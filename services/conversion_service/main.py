from fastapi import FastAPI, HTTPException, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import os
from typing import Dict, List, Optional
import logging

from .config import Settings
from .errors import (
    ConversionError, InvalidStateTransition, JobNotFound, ResourceError,
    UnsupportedOperation, ValidationError
)
from .models import ConversionRequest, JobResponse, JobStatus, SubmissionResponse
from .services.artifact_store import ArtifactStore, LocalArtifactStore
from .services.conversion_service import ConversionService
from .services.events import EventBus, LoggingEventSink, WebhookAuditSink
from .database.datastore import DatastoreClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    UnsupportedOperation: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ResourceError: status.HTTP_404_NOT_FOUND,
}


def to_http_error(error: Exception) -> HTTPException:
    """Map engine errors onto HTTP status codes"""
    if isinstance(error, JobNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidStateTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, ConversionError):
        return HTTPException(
            status_code=ERROR_STATUS.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=error.to_dict()
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Internal error: {str(error)}"
    )


def get_service(request: Request) -> ConversionService:
    return request.app.state.conversion_service


def get_store(request: Request) -> ArtifactStore:
    return request.app.state.artifact_store


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting Conversion Service...")

        events = EventBus([LoggingEventSink()])

        datastore_client = None
        if settings.datastore_enabled:
            datastore_client = DatastoreClient(settings.google_cloud_project, settings.datastore_namespace)
            events.add_sink(datastore_client)

        if settings.audit_webhook_url:
            events.add_sink(WebhookAuditSink(settings.audit_webhook_url, settings.audit_webhook_timeout_seconds))

        store = LocalArtifactStore(settings.storage_dir)

        app.state.settings = settings
        app.state.artifact_store = store
        app.state.conversion_service = ConversionService.create(settings, store, events)
        app.state.datastore_client = datastore_client

        logger.info("Conversion Service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down Conversion Service...")
        if datastore_client:
            await datastore_client.close()
        logger.info("Conversion Service shutdown complete")

    app = FastAPI(
        title="Conversion Service",
        description="Document and image conversion with per-job tracking and batch execution",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check
    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "conversion-service"}

    # Capability endpoints
    @app.get("/api/v1/formats", response_model=Dict[str, List[str]])
    async def list_formats(service: ConversionService = Depends(get_service)):
        """Conversion targets for every supported source format"""
        return service.list_capabilities()

    @app.get("/api/v1/formats/{source_format}")
    async def list_targets(source_format: str, service: ConversionService = Depends(get_service)):
        """Conversion targets for one source format; empty when the format is unknown"""
        targets = service.list_supported_targets(source_format)
        return {"source_format": source_format.lower().lstrip("."), "targets": targets}

    # Artifact endpoints
    @app.post("/api/v1/artifacts", status_code=status.HTTP_201_CREATED)
    async def upload_artifact(
        request: Request,
        filename: str,
        store: ArtifactStore = Depends(get_store)
    ):
        """Store the raw request body and return its handle"""
        data = await request.body()
        if not data:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")

        try:
            handle = await store.write(data, filename)
        except ResourceError as e:
            logger.error(f"Failed to store upload {filename}: {e.message}")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.to_dict())

        return {"handle": handle, "size_bytes": len(data)}

    @app.get("/api/v1/artifacts/{handle:path}")
    async def download_artifact(handle: str, store: ArtifactStore = Depends(get_store)):
        try:
            data = await store.read(handle)
        except ResourceError as e:
            raise to_http_error(e)

        filename = handle.rsplit("/", 1)[-1]
        return Response(
            content=data,
            media_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'}
        )

    # Conversion endpoints
    @app.post("/api/v1/conversions", response_model=SubmissionResponse)
    async def submit_conversion(
        conversion_request: ConversionRequest,
        service: ConversionService = Depends(get_service)
    ):
        """Run a single conversion or a batch and return the outcome"""
        try:
            result = await service.submit(conversion_request)
            return SubmissionResponse.from_result(result)
        except ValidationError as e:
            logger.warning(f"Rejected conversion request: {e.message}")
            raise to_http_error(e)
        except Exception as e:
            logger.error(f"Failed to run conversion: {str(e)}")
            raise to_http_error(e)

    # Job endpoints
    @app.get("/api/v1/jobs", response_model=List[JobResponse])
    async def list_jobs(
        status: Optional[JobStatus] = None,
        service: ConversionService = Depends(get_service)
    ):
        """List jobs with optional status filter"""
        return [JobResponse.from_job(job) for job in service.list_jobs(status=status)]

    @app.get("/api/v1/jobs/{job_id}", response_model=JobResponse)
    async def get_job(job_id: str, service: ConversionService = Depends(get_service)):
        """Get job status and details"""
        try:
            return JobResponse.from_job(service.get_job(job_id))
        except JobNotFound as e:
            raise to_http_error(e)

    @app.delete("/api/v1/jobs/{job_id}", response_model=JobResponse)
    async def abandon_job(job_id: str, service: ConversionService = Depends(get_service)):
        """Abandon a job that has not been dispatched yet"""
        try:
            return JobResponse.from_job(await service.abandon(job_id))
        except (JobNotFound, InvalidStateTransition) as e:
            raise to_http_error(e)

    @app.post("/api/v1/jobs/{job_id}/retry", response_model=SubmissionResponse)
    async def retry_job(job_id: str, service: ConversionService = Depends(get_service)):
        """Re-run a failed job as a new job"""
        try:
            return SubmissionResponse.from_result(await service.retry(job_id))
        except (JobNotFound, InvalidStateTransition) as e:
            raise to_http_error(e)
        except Exception as e:
            logger.error(f"Failed to retry job {job_id}: {str(e)}")
            raise to_http_error(e)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "services.conversion_service.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("ENVIRONMENT", "production") == "development"
    )
