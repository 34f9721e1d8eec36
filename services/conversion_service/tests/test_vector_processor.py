import io
import pytest
import fitz
from PIL import Image

from services.conversion_service.errors import BackendFailure
from services.conversion_service.models import OperationKind
from services.conversion_service.services.backend import TransformRequest
from services.conversion_service.services.vector_processor import VectorProcessor

SAMPLE_SVG = b"""<?xml version="1.0" encoding="UTF-8"?>
<svg xmlns="http://www.w3.org/2000/svg" width="200" height="100" viewBox="0 0 200 100">
  <rect x="0" y="0" width="200" height="100" fill="#3366cc"/>
  <circle cx="100" cy="50" r="30" fill="#ffffff"/>
</svg>
"""


def svg_request(ref, target="png", **options):
    return TransformRequest(
        input_refs=[ref],
        operation=OperationKind.CONVERT,
        source_format="svg",
        target_format=target,
        options=options
    )


class TestVectorProcessor:
    """Test cases for VectorProcessor"""

    @pytest.fixture
    def vector_processor(self, artifact_store, test_settings):
        return VectorProcessor(artifact_store, test_settings)

    @pytest.fixture
    def svg_ref(self, put_artifact):
        return put_artifact(SAMPLE_SVG, "drawing.svg")

    @pytest.mark.asyncio
    async def test_svg_to_png_fits_default_size(self, vector_processor, artifact_store, svg_ref):
        artifact = await vector_processor.transform(svg_request(svg_ref))

        img = Image.open(io.BytesIO(await artifact_store.read(artifact.handle)))
        assert img.format == 'PNG'
        width, height = img.size
        # 2:1 drawing inside 1920x1080 is limited by width
        assert abs(width - 1920) <= 1
        assert abs(height - 960) <= 1

    @pytest.mark.asyncio
    async def test_svg_to_jpg_with_custom_size(self, vector_processor, artifact_store, svg_ref):
        artifact = await vector_processor.transform(svg_request(svg_ref, target="jpg", width=400, height=400))

        img = Image.open(io.BytesIO(await artifact_store.read(artifact.handle)))
        assert img.format == 'JPEG'
        assert img.mode == 'RGB'
        assert abs(img.size[0] - 400) <= 1
        assert abs(img.size[1] - 200) <= 1

    @pytest.mark.asyncio
    async def test_svg_to_pdf(self, vector_processor, artifact_store, svg_ref):
        artifact = await vector_processor.transform(svg_request(svg_ref, target="pdf", width=400, height=400))

        doc = fitz.open(stream=await artifact_store.read(artifact.handle), filetype='pdf')
        assert doc.page_count == 1
        assert abs(doc[0].rect.width - 400) <= 1
        doc.close()

    @pytest.mark.asyncio
    async def test_invalid_svg(self, vector_processor, put_artifact):
        ref = put_artifact(b"<not-svg", "broken.svg")

        with pytest.raises(BackendFailure):
            await vector_processor.transform(svg_request(ref))
