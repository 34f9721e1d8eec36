import asyncio
from typing import Any, Dict, Tuple
import logging

import fitz  # PyMuPDF

from ..errors import BackendFailure
from ..models import AdapterId, OperationKind, OutputArtifact
from .backend import BackendAdapter, TransformRequest

logger = logging.getLogger(__name__)

# PyMuPDF file type names for the formats OCR accepts
FILETYPES = {
    'jpg': 'jpeg',
    'jpeg': 'jpeg',
    'png': 'png',
    'webp': 'webp',
    'gif': 'gif',
    'pdf': 'pdf',
}


class OcrProcessor(BackendAdapter):
    """Text recognition through PyMuPDF's Tesseract integration.

    Requires a Tesseract installation with the requested language data
    (located through TESSDATA_PREFIX). The recognised text is returned on the
    artifact itself; nothing is written to the store.
    """

    adapter_id = AdapterId.OCR

    OCR_DPI = 300

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        if request.operation != OperationKind.OCR:
            raise BackendFailure(f"OCR backend cannot perform '{request.operation.value}'")

        language = request.options.get('language', self.settings.ocr_default_language)
        source = await self._read(request.input_ref)

        text, metadata = await asyncio.to_thread(self._recognize, source, request.source_format, language)
        logger.info(f"OCR ({language}) extracted {len(text)} characters from {metadata['page_count']} page(s)")

        return OutputArtifact(text=text, size_bytes=len(text.encode('utf-8')), metadata=metadata)

    def _recognize(self, data: bytes, source_format: str, language: str) -> Tuple[str, Dict[str, Any]]:
        filetype = FILETYPES.get(source_format)
        if filetype is None:
            raise BackendFailure(f"OCR does not accept {source_format} input")

        try:
            doc = fitz.open(stream=data, filetype=filetype)
        except (RuntimeError, ValueError) as e:
            raise BackendFailure(f"Cannot read {source_format} input: {str(e)}")

        try:
            pages = []
            for page in doc:
                try:
                    textpage = page.get_textpage_ocr(language=language, dpi=self.OCR_DPI, full=True)
                except (RuntimeError, ValueError) as e:
                    raise BackendFailure(f"OCR failed: {str(e)}")
                pages.append(page.get_text(textpage=textpage))

            return "\n".join(pages).strip(), {
                'language': language,
                'page_count': len(pages),
            }
        finally:
            doc.close()
