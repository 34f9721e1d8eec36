import asyncio
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
import logging

from ..errors import ResourceError

logger = logging.getLogger(__name__)


class ArtifactStore(ABC):
    """Opaque byte storage for input and output artifacts.

    The engine only threads handles through; it never interprets them.
    Implementations raise ResourceError for any read or write failure.
    """

    @abstractmethod
    async def read(self, handle: str) -> bytes:
        ...

    @abstractmethod
    async def write(self, data: bytes, filename: str) -> str:
        ...

    @abstractmethod
    async def exists(self, handle: str) -> bool:
        ...


class LocalArtifactStore(ArtifactStore):
    """Artifact store backed by a local directory"""

    MAX_FILENAME_LENGTH = 200

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _sanitize_filename(self, filename: str) -> str:
        sanitized = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", filename or "")
        sanitized = sanitized.replace("..", "_").strip(". ")
        return sanitized[:self.MAX_FILENAME_LENGTH] or "artifact"

    def path_for(self, handle: str) -> Path:
        """Resolve a handle to a path inside the store directory"""
        path = (self.base_dir / handle).resolve()
        if self.base_dir not in path.parents:
            raise ResourceError(f"Invalid artifact handle: {handle}")
        return path

    async def read(self, handle: str) -> bytes:
        path = self.path_for(handle)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            logger.error(f"Error reading artifact {handle}: {str(e)}")
            raise ResourceError(f"Artifact could not be read: {handle}")

    async def write(self, data: bytes, filename: str) -> str:
        handle = f"{uuid.uuid4().hex}/{self._sanitize_filename(filename)}"
        path = self.path_for(handle)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.error(f"Error writing artifact {filename}: {str(e)}")
            raise ResourceError(f"Artifact could not be written: {filename}")

        return handle

    async def exists(self, handle: str) -> bool:
        try:
            return self.path_for(handle).is_file()
        except ResourceError:
            return False
