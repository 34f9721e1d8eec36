import asyncio
import io
from typing import Any, Dict, List, Tuple
import logging

import fitz  # PyMuPDF
from PIL import Image
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ..errors import BackendFailure, ValidationError
from ..models import AdapterId, OperationKind, OutputArtifact
from .backend import BackendAdapter, TransformRequest
from .image_processor import encode_image, open_image

logger = logging.getLogger(__name__)


def open_pdf(data: bytes) -> fitz.Document:
    """Open PDF bytes, raising BackendFailure for unreadable documents"""
    try:
        doc = fitz.open(stream=data, filetype='pdf')
    except (RuntimeError, ValueError) as e:
        raise BackendFailure(f"Cannot read PDF: {str(e)}")

    if doc.needs_pass:
        doc.close()
        raise BackendFailure("PDF is encrypted")
    if doc.page_count == 0:
        doc.close()
        raise BackendFailure("PDF has no pages")
    return doc


def check_page(doc: fitz.Document, page: int, field: str = 'page'):
    if page >= doc.page_count:
        raise ValidationError(
            f"Page {page} is out of range; document has {doc.page_count} page(s)",
            field=field
        )


def hex_to_rgb(value: str) -> Tuple[float, float, float]:
    """'#FF8000' -> (1.0, 0.5, 0.0) as PyMuPDF expects"""
    value = value.lstrip('#')
    return tuple(int(value[i:i + 2], 16) / 255 for i in (0, 2, 4))


class PdfComposeProcessor(BackendAdapter):
    """Builds one PDF from several inputs: merge PDFs, or place images on pages"""

    adapter_id = AdapterId.PDF_COMPOSE

    async def preflight(self, request: TransformRequest) -> None:
        if request.operation == OperationKind.MERGE and len(request.input_refs) < 2:
            raise ValidationError("Merge requires at least 2 PDF files", field='inputs')

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        sources = [await self._read(ref) for ref in request.input_refs]

        if request.operation == OperationKind.MERGE:
            data, metadata = await asyncio.to_thread(self._merge, sources)
            suffix = 'merged'
        elif request.operation in (OperationKind.IMAGES_TO_PDF, OperationKind.CONVERT):
            data, metadata = await asyncio.to_thread(self._images_to_pdf, sources)
            suffix = 'images' if request.operation == OperationKind.IMAGES_TO_PDF else 'converted'
        else:
            raise BackendFailure(f"PDF compose backend cannot perform '{request.operation.value}'")

        filename = self._output_filename(suffix, 'pdf')
        logger.info(f"Composed {filename} from {len(sources)} input(s), {metadata['page_count']} page(s)")
        return await self._save(data, filename, **metadata)

    def _merge(self, sources: List[bytes]) -> Tuple[bytes, Dict[str, Any]]:
        merged = fitz.open()
        try:
            for data in sources:
                doc = open_pdf(data)
                try:
                    merged.insert_pdf(doc)
                finally:
                    doc.close()

            return merged.tobytes(garbage=3, deflate=True), {
                'page_count': merged.page_count,
                'document_count': len(sources),
            }
        finally:
            merged.close()

    def _images_to_pdf(self, sources: List[bytes]) -> Tuple[bytes, Dict[str, Any]]:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer)

        for data in sources:
            img = open_image(data)
            if img.mode != 'RGB':
                img = Image.open(io.BytesIO(encode_image(img, 'jpg', 95)))

            # One page per image, sized to the image
            pdf.setPageSize((img.width, img.height))
            pdf.drawImage(ImageReader(img), 0, 0, width=img.width, height=img.height)
            pdf.showPage()

        pdf.save()
        return buffer.getvalue(), {'page_count': len(sources)}


class PdfEditProcessor(BackendAdapter):
    """In-place PDF edits: text stamping, annotations and compression"""

    adapter_id = AdapterId.PDF_EDIT

    async def preflight(self, request: TransformRequest) -> None:
        if request.operation not in (OperationKind.ADD_TEXT, OperationKind.ANNOTATE):
            return

        doc = open_pdf(await self._read(request.input_ref))
        try:
            if request.operation == OperationKind.ADD_TEXT:
                check_page(doc, request.options.get('page', 0))
            else:
                for index, annotation in enumerate(request.options['annotations']):
                    check_page(doc, annotation.get('page', 0), field=f'annotations[{index}]')
        finally:
            doc.close()

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        source = await self._read(request.input_ref)

        handlers = {
            OperationKind.ADD_TEXT: (self._add_text, 'text_added'),
            OperationKind.ANNOTATE: (self._annotate, 'annotated'),
            OperationKind.COMPRESS: (self._compress, 'compressed'),
        }
        if request.operation not in handlers:
            raise BackendFailure(f"PDF edit backend cannot perform '{request.operation.value}'")

        handler, suffix = handlers[request.operation]
        data, metadata = await asyncio.to_thread(handler, source, request.options)

        filename = self._output_filename(suffix, 'pdf')
        return await self._save(data, filename, **metadata)

    def _add_text(self, data: bytes, options: Dict[str, Any]) -> Tuple[bytes, Dict[str, Any]]:
        doc = open_pdf(data)
        try:
            page_number = options.get('page', 0)
            check_page(doc, page_number)

            page = doc[page_number]
            page.insert_text(
                (options.get('x', 50), options.get('y', 50)),
                options['text'],
                fontsize=options.get('font_size', 12),
                color=hex_to_rgb(options.get('color', '#000000'))
            )
            return doc.tobytes(garbage=3, deflate=True), {'page_count': doc.page_count}
        finally:
            doc.close()

    def _annotate(self, data: bytes, options: Dict[str, Any]) -> Tuple[bytes, Dict[str, Any]]:
        doc = open_pdf(data)
        try:
            for index, annotation in enumerate(options['annotations']):
                page_number = annotation.get('page', 0)
                check_page(doc, page_number, field=f'annotations[{index}]')
                self._add_annotation(doc[page_number], annotation)

            return doc.tobytes(garbage=3, deflate=True), {
                'page_count': doc.page_count,
                'annotation_count': len(options['annotations']),
            }
        finally:
            doc.close()

    def _add_annotation(self, page: fitz.Page, annotation: Dict[str, Any]):
        kind = annotation['type']
        x, y = annotation['x'], annotation['y']
        color = hex_to_rgb(annotation['color']) if annotation.get('color') else None

        if kind == 'text':
            annot = page.add_text_annot(fitz.Point(x, y), annotation['content'])
        else:
            rect = fitz.Rect(x, y, x + annotation['width'], y + annotation['height'])
            if kind == 'highlight':
                annot = page.add_highlight_annot(rect)
            elif kind == 'rect':
                annot = page.add_rect_annot(rect)
            else:
                annot = page.add_freetext_annot(
                    rect,
                    annotation['content'],
                    fontsize=annotation.get('font_size', 12),
                    text_color=color or (0, 0, 0)
                )
                annot.update()
                return

        if color:
            annot.set_colors(stroke=color)
        annot.update()

    def _compress(self, data: bytes, options: Dict[str, Any]) -> Tuple[bytes, Dict[str, Any]]:
        doc = open_pdf(data)
        try:
            output = doc.tobytes(garbage=4, deflate=True, clean=True)
            return output, {
                'page_count': doc.page_count,
                'original_size_bytes': len(data),
            }
        finally:
            doc.close()


class PdfRenderProcessor(BackendAdapter):
    """Renders one PDF page to a raster image"""

    adapter_id = AdapterId.PDF_RENDER

    async def preflight(self, request: TransformRequest) -> None:
        doc = open_pdf(await self._read(request.input_ref))
        try:
            check_page(doc, request.options.get('page', 0))
        finally:
            doc.close()

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        source = await self._read(request.input_ref)
        data, metadata = await asyncio.to_thread(self._render, source, request)

        filename = self._output_filename('converted', request.target_format)
        return await self._save(data, filename, **metadata)

    def _render(self, data: bytes, request: TransformRequest) -> Tuple[bytes, Dict[str, Any]]:
        options = request.options
        page_number = options.get('page', 0)
        dpi = options.get('dpi', self.settings.pdf_render_dpi)

        doc = open_pdf(data)
        try:
            check_page(doc, page_number)
            pix = doc[page_number].get_pixmap(dpi=dpi, alpha=False)
            page_count = doc.page_count
        finally:
            doc.close()

        img = Image.frombytes('RGB', (pix.width, pix.height), pix.samples)
        quality = options.get('quality', self.settings.default_image_quality)

        return encode_image(img, request.target_format, quality), {
            'dimensions': [pix.width, pix.height],
            'page': page_number,
            'page_count': page_count,
            'dpi': dpi,
            'format': request.target_format,
        }
