import asyncio
from typing import Any, Dict, Tuple
import logging

import fitz  # PyMuPDF
from PIL import Image

from ..errors import BackendFailure
from ..models import AdapterId, OperationKind, OutputArtifact
from .backend import BackendAdapter, TransformRequest
from .image_processor import encode_image

logger = logging.getLogger(__name__)


class VectorProcessor(BackendAdapter):
    """Rasterises SVG drawings.

    The drawing is scaled to fit inside the requested size (1920x1080 unless
    ``width``/``height`` are given) and then encoded by the raster pipeline,
    or placed on a single PDF page of the same size.
    """

    adapter_id = AdapterId.VECTOR_IMAGE

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        if request.operation != OperationKind.CONVERT:
            raise BackendFailure(f"Vector backend cannot perform '{request.operation.value}'")

        source = await self._read(request.input_ref)
        data, metadata = await asyncio.to_thread(self._convert, source, request)

        filename = self._output_filename('converted', request.target_format)
        logger.info(f"Rasterised SVG to {filename} at {metadata['dimensions']}")
        return await self._save(data, filename, **metadata)

    def rasterise(self, data: bytes, width: int, height: int) -> fitz.Pixmap:
        try:
            doc = fitz.open(stream=data, filetype='svg')
        except (RuntimeError, ValueError) as e:
            raise BackendFailure(f"Cannot read SVG: {str(e)}")

        try:
            if doc.page_count < 1:
                raise BackendFailure("SVG contains no drawable content")

            page = doc[0]
            bounds = page.rect
            if bounds.width <= 0 or bounds.height <= 0:
                raise BackendFailure("SVG has no usable dimensions")

            scale = min(width / bounds.width, height / bounds.height)
            return page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=True)
        except RuntimeError as e:
            raise BackendFailure(f"Cannot render SVG: {str(e)}")
        finally:
            doc.close()

    def _convert(self, data: bytes, request: TransformRequest) -> Tuple[bytes, Dict[str, Any]]:
        options = request.options
        width = options.get('width', self.settings.svg_default_width)
        height = options.get('height', self.settings.svg_default_height)

        pix = self.rasterise(data, width, height)
        img = Image.frombytes('RGBA', (pix.width, pix.height), pix.samples)
        metadata = {'dimensions': [pix.width, pix.height], 'format': request.target_format}

        if request.target_format == 'pdf':
            return self._single_page_pdf(img), metadata

        quality = options.get('quality', self.settings.default_image_quality)
        return encode_image(img, request.target_format, quality), metadata

    def _single_page_pdf(self, img: Image.Image) -> bytes:
        doc = fitz.open()
        try:
            page = doc.new_page(width=img.width, height=img.height)
            page.insert_image(page.rect, stream=encode_image(img, 'png'))
            return doc.tobytes(garbage=3, deflate=True)
        finally:
            doc.close()
