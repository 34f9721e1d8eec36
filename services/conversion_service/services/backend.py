import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List
import logging

from ..config import Settings
from ..models import AdapterId, OperationKind, OutputArtifact
from .artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass
class TransformRequest:
    """Everything a backend needs for one transformation"""
    input_refs: List[str]
    operation: OperationKind
    source_format: str
    target_format: str
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def input_ref(self) -> str:
        return self.input_refs[0]


class BackendAdapter(ABC):
    """Uniform contract implemented by every transformation backend.

    ``preflight`` performs content-dependent validation (region bounds, page
    ranges) before any work starts and raises ValidationError. ``transform``
    does the work and returns the stored output artifact; any failure is
    raised as a ConversionError subclass or a plain exception, which the
    dispatcher reports as a backend failure.
    """

    adapter_id: AdapterId

    def __init__(self, store: ArtifactStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def preflight(self, request: TransformRequest) -> None:
        return None

    @abstractmethod
    async def transform(self, request: TransformRequest) -> OutputArtifact:
        ...

    async def _read(self, handle: str) -> bytes:
        return await self.store.read(handle)

    async def _save(self, data: bytes, filename: str, **metadata) -> OutputArtifact:
        handle = await self.store.write(data, filename)
        return OutputArtifact(
            handle=handle,
            filename=filename,
            size_bytes=len(data),
            metadata=metadata
        )

    def _output_filename(self, suffix: str, extension: str) -> str:
        return f"{int(time.time() * 1000)}_{suffix}.{extension.lstrip('.')}"
