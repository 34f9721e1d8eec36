from typing import List, Optional
import logging
import httpx

from ..models import AuditEvent, OperationKind, StateTransition

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = {
    OperationKind.CONVERT: "FILE_CONVERT",
    OperationKind.CROP: "IMAGE_CROP",
    OperationKind.ROTATE: "IMAGE_ROTATE",
    OperationKind.RESIZE: "IMAGE_RESIZE",
    OperationKind.COMPRESS: "FILE_COMPRESS",
    OperationKind.REMOVE_BACKGROUND: "REMOVE_BACKGROUND",
    OperationKind.REMOVE_WATERMARK: "REMOVE_WATERMARK",
    OperationKind.ANNOTATE: "PDF_ANNOTATE",
    OperationKind.ADD_TEXT: "PDF_ADD_TEXT",
    OperationKind.OCR: "OCR",
    OperationKind.MERGE: "MERGE_PDF",
    OperationKind.IMAGES_TO_PDF: "IMAGES_TO_PDF",
    OperationKind.COLLAGE: "MERGE_IMAGES",
}


def audit_action(operation: OperationKind, batch: bool = False) -> str:
    """Audit action name for an operation, e.g. FILE_CONVERT, or BATCH_CONVERT for batches"""
    operation = OperationKind(operation)
    if batch:
        return "BATCH_" + operation.value.upper().replace("-", "_")
    return AUDIT_ACTIONS[operation]


class EventSink:
    """Consumer of state transitions and audit events. Both hooks default to no-ops."""

    async def publish_transition(self, event: StateTransition) -> None:
        return None

    async def publish_audit(self, event: AuditEvent) -> None:
        return None


class LoggingEventSink(EventSink):
    """Writes every event to the service log"""

    async def publish_transition(self, event: StateTransition) -> None:
        logger.info(
            f"Job {event.job_id} transitioned {event.old_status.value} -> {event.new_status.value}"
        )

    async def publish_audit(self, event: AuditEvent) -> None:
        logger.info(f"Audit {event.action} by user {event.user_id}: {event.metadata}")


class WebhookAuditSink(EventSink):
    """Posts audit events to an HTTP endpoint"""

    def __init__(self, webhook_url: str, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def publish_audit(self, event: AuditEvent) -> None:
        payload = event.model_dump(mode='json')

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.webhook_url,
                json=payload,
                headers={'Content-Type': 'application/json'}
            )
            response.raise_for_status()

        logger.debug(f"Audit event {event.action} delivered to webhook")


class EventBus:
    """Fans events out to registered sinks.

    A failing sink is logged and skipped; publishing never raises, so an
    unavailable persistence or audit collaborator cannot block dispatch.
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])

    def add_sink(self, sink: EventSink):
        self.sinks.append(sink)

    async def publish_transition(self, event: StateTransition):
        for sink in self.sinks:
            try:
                await sink.publish_transition(event)
            except Exception as e:
                logger.warning(
                    f"Event sink {type(sink).__name__} failed on transition for job {event.job_id}: {str(e)}"
                )

    async def publish_audit(self, event: AuditEvent):
        for sink in self.sinks:
            try:
                await sink.publish_audit(event)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed on audit {event.action}: {str(e)}")
