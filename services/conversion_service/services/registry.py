from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple, Iterable
import logging

from ..models import AdapterId, OperationKind, normalize_format

logger = logging.getLogger(__name__)

OFFICE_CONVERSIONS = {
    'docx': ['pdf', 'txt', 'html'],
    'doc': ['pdf', 'txt', 'html'],
    'xlsx': ['pdf', 'csv'],
    'xls': ['pdf', 'csv'],
    'pptx': ['pdf'],
    'ppt': ['pdf'],
    'pdf': ['docx', 'doc'],
}

RASTER_FORMATS = ['jpg', 'jpeg', 'png', 'webp', 'gif']
COMPRESSIBLE_RASTER_FORMATS = ['jpg', 'jpeg', 'png', 'webp']
PDF_RENDER_TARGETS = ['png', 'jpg']
SVG_TARGETS = ['png', 'jpg', 'pdf']
COLLAGE_TARGETS = ['jpg', 'png']


@dataclass(frozen=True)
class CapabilityEntry:
    """One supported (source, target, operation) triple and the backend that handles it"""
    source_format: str
    target_format: str
    operation: OperationKind
    adapter_id: AdapterId

    @property
    def key(self) -> Tuple[str, str, OperationKind]:
        return (self.source_format, self.target_format, self.operation)


def default_capabilities() -> List[CapabilityEntry]:
    """Build the static capability table"""
    entries = []

    def add(source: str, target: str, operation: OperationKind, adapter_id: AdapterId):
        entries.append(CapabilityEntry(source, target, operation, adapter_id))

    # Office documents
    for source, targets in OFFICE_CONVERSIONS.items():
        for target in targets:
            add(source, target, OperationKind.CONVERT, AdapterId.OFFICE)

    # PDF pages to images
    for target in PDF_RENDER_TARGETS:
        add('pdf', target, OperationKind.CONVERT, AdapterId.PDF_RENDER)

    # Raster images
    for source in RASTER_FORMATS:
        for target in RASTER_FORMATS:
            if target != source:
                add(source, target, OperationKind.CONVERT, AdapterId.RASTER_IMAGE)
        add(source, 'pdf', OperationKind.CONVERT, AdapterId.PDF_COMPOSE)

        for operation in (OperationKind.CROP, OperationKind.ROTATE, OperationKind.RESIZE):
            add(source, source, operation, AdapterId.RASTER_IMAGE)

        add(source, 'png', OperationKind.REMOVE_BACKGROUND, AdapterId.IMAGE_CLEANUP)
        add(source, source, OperationKind.REMOVE_WATERMARK, AdapterId.IMAGE_CLEANUP)
        add(source, 'txt', OperationKind.OCR, AdapterId.OCR)
        add(source, 'pdf', OperationKind.IMAGES_TO_PDF, AdapterId.PDF_COMPOSE)

        for target in COLLAGE_TARGETS:
            add(source, target, OperationKind.COLLAGE, AdapterId.RASTER_IMAGE)

    for source in COMPRESSIBLE_RASTER_FORMATS:
        add(source, source, OperationKind.COMPRESS, AdapterId.RASTER_IMAGE)

    # Vector images
    for target in SVG_TARGETS:
        add('svg', target, OperationKind.CONVERT, AdapterId.VECTOR_IMAGE)

    # PDF documents
    add('pdf', 'pdf', OperationKind.COMPRESS, AdapterId.PDF_EDIT)
    add('pdf', 'pdf', OperationKind.ANNOTATE, AdapterId.PDF_EDIT)
    add('pdf', 'pdf', OperationKind.ADD_TEXT, AdapterId.PDF_EDIT)
    add('pdf', 'pdf', OperationKind.MERGE, AdapterId.PDF_COMPOSE)
    add('pdf', 'txt', OperationKind.OCR, AdapterId.OCR)

    return entries


class CapabilityRegistry:
    """Static, read-only mapping of format capabilities to backend adapters.

    Lookups are total: unknown formats or operations resolve to ``None``
    (unsupported) instead of raising.
    """

    def __init__(self, entries: Optional[Iterable[CapabilityEntry]] = None):
        table: Dict[Tuple[str, str, OperationKind], AdapterId] = {}

        for entry in (default_capabilities() if entries is None else entries):
            entry = CapabilityEntry(
                normalize_format(entry.source_format),
                normalize_format(entry.target_format),
                OperationKind(entry.operation),
                AdapterId(entry.adapter_id)
            )
            if entry.key in table:
                raise ValueError(f"Duplicate capability entry: {entry.key}")
            table[entry.key] = entry.adapter_id

        self._table = table

    def __len__(self) -> int:
        return len(self._table)

    def resolve(
        self,
        source_format: str,
        target_format: str,
        operation: OperationKind
    ) -> Optional[AdapterId]:
        """
        Resolve the backend adapter for a transformation

        Args:
            source_format: Source format name (case-insensitive, leading dot ignored)
            target_format: Target format name
            operation: Operation kind (enum member or its string value)

        Returns:
            AdapterId of the backend, or None when unsupported
        """
        try:
            operation = OperationKind(operation)
        except ValueError:
            return None

        key = (normalize_format(source_format), normalize_format(target_format), operation)
        return self._table.get(key)

    def supported_targets(
        self,
        source_format: str,
        operation: Optional[OperationKind] = None
    ) -> Set[str]:
        """Target formats reachable from a source format (empty set when unknown)"""
        source = normalize_format(source_format)
        return {
            target for (src, target, op) in self._table
            if src == source and (operation is None or op == operation)
        }

    def supported_operations(self, source_format: str, target_format: str) -> Set[OperationKind]:
        source = normalize_format(source_format)
        target = normalize_format(target_format)
        return {
            op for (src, tgt, op) in self._table
            if src == source and tgt == target
        }

    def source_formats(self) -> Set[str]:
        return {src for (src, _, _) in self._table}

    def list_capabilities(self) -> Dict[str, List[str]]:
        """Conversion targets per source format, for option lists in UIs and CLIs"""
        capabilities = {}
        for source in sorted(self.source_formats()):
            targets = self.supported_targets(source, OperationKind.CONVERT)
            if targets:
                capabilities[source] = sorted(targets)
        return capabilities

