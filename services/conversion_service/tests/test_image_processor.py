import io
import pytest
from unittest.mock import patch, AsyncMock
from PIL import Image

from services.conversion_service.errors import BackendFailure, ValidationError
from services.conversion_service.models import ErrorKind, JobStatus, OperationKind
from services.conversion_service.services.backend import TransformRequest
from services.conversion_service.services.image_processor import ImageCleanupProcessor, ImageProcessor

from conftest import image_bytes, make_job


def request_for(ref, operation=OperationKind.CONVERT, source="jpg", target="png", refs=None, **options):
    return TransformRequest(
        input_refs=refs or [ref],
        operation=operation,
        source_format=source,
        target_format=target,
        options=options
    )


class TestImageProcessor:
    """Test cases for ImageProcessor"""

    @pytest.fixture
    def image_processor(self, artifact_store, test_settings):
        return ImageProcessor(artifact_store, test_settings)

    @pytest.fixture
    def sample_image(self, put_artifact):
        """800x600 blue JPEG"""
        return put_artifact(image_bytes((800, 600), color='blue'), "sample.jpg")

    async def load(self, artifact_store, artifact):
        return Image.open(io.BytesIO(await artifact_store.read(artifact.handle)))

    @pytest.mark.asyncio
    async def test_convert_jpg_to_png(self, image_processor, artifact_store, sample_image):
        artifact = await image_processor.transform(request_for(sample_image))

        assert artifact.filename.endswith("_converted.png")
        assert artifact.size_bytes > 0
        img = await self.load(artifact_store, artifact)
        assert img.format == 'PNG'
        assert img.size == (800, 600)

    @pytest.mark.asyncio
    async def test_convert_transparent_png_to_jpg(self, image_processor, artifact_store, put_artifact):
        ref = put_artifact(image_bytes(color=(255, 0, 0, 128), fmt='PNG', mode='RGBA'), "alpha.png")

        artifact = await image_processor.transform(request_for(ref, source="png", target="jpg"))

        img = await self.load(artifact_store, artifact)
        assert img.format == 'JPEG'
        assert img.mode == 'RGB'

    @pytest.mark.asyncio
    async def test_resize_contain_keeps_aspect_ratio(self, image_processor, artifact_store, sample_image):
        request = request_for(sample_image, OperationKind.RESIZE, target="jpg", width=400, height=400)

        artifact = await image_processor.transform(request)

        img = await self.load(artifact_store, artifact)
        assert img.size == (400, 300)
        assert artifact.metadata['original_dimensions'] == [800, 600]

    @pytest.mark.asyncio
    async def test_resize_contain_never_enlarges(self, image_processor, artifact_store, sample_image):
        request = request_for(sample_image, OperationKind.RESIZE, target="jpg", width=2000, height=2000)

        artifact = await image_processor.transform(request)

        img = await self.load(artifact_store, artifact)
        assert img.size == (800, 600)

    @pytest.mark.asyncio
    async def test_resize_fill_uses_exact_dimensions(self, image_processor, artifact_store, sample_image):
        request = request_for(sample_image, OperationKind.RESIZE, target="jpg", width=300, height=200, fit="fill")

        artifact = await image_processor.transform(request)

        img = await self.load(artifact_store, artifact)
        assert img.size == (300, 200)

    @pytest.mark.asyncio
    async def test_crop(self, image_processor, artifact_store, sample_image):
        region = {"x": 100, "y": 50, "width": 200, "height": 120}
        request = request_for(sample_image, OperationKind.CROP, target="jpg", region=region)

        await image_processor.preflight(request)
        artifact = await image_processor.transform(request)

        img = await self.load(artifact_store, artifact)
        assert img.size == (200, 120)

    @pytest.mark.asyncio
    async def test_crop_outside_bounds_fails_preflight(self, image_processor, put_artifact, sample_image_bytes):
        ref = put_artifact(sample_image_bytes, "small.jpg")
        region = {"x": 0, "y": 0, "width": 5000, "height": 5000}

        with pytest.raises(ValidationError):
            await image_processor.preflight(request_for(ref, OperationKind.CROP, target="jpg", region=region))

    @pytest.mark.asyncio
    async def test_oversized_crop_never_reaches_transform(
        self, image_processor, make_dispatcher, tracker, put_artifact, sample_image_bytes
    ):
        """A 5000x5000 crop on a 100x100 image is rejected before any work"""
        ref = put_artifact(sample_image_bytes, "small.jpg")
        job = tracker.create(make_job(
            input_ref=ref, source_format="jpg", target_format="jpg", operation=OperationKind.CROP,
            options={"region": {"x": 0, "y": 0, "width": 5000, "height": 5000}}
        ))
        dispatcher = make_dispatcher(image_processor)

        with patch.object(ImageProcessor, 'transform', new_callable=AsyncMock) as transform:
            outcome = await dispatcher.execute(job)

        transform.assert_not_awaited()
        assert outcome.error.kind == ErrorKind.VALIDATION
        assert tracker.get(job.job_id).started_at is None
        assert tracker.status(job.job_id) == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_rotate_expands_canvas(self, image_processor, artifact_store, sample_image):
        request = request_for(sample_image, OperationKind.ROTATE, target="jpg", degrees=90)

        artifact = await image_processor.transform(request)

        img = await self.load(artifact_store, artifact)
        assert img.size == (600, 800)

    @pytest.mark.asyncio
    async def test_compress_reduces_jpeg_size(self, image_processor, artifact_store, put_artifact):
        from PIL import ImageDraw

        noisy = Image.new('RGB', (400, 400), 'white')
        draw = ImageDraw.Draw(noisy)
        for i in range(0, 400, 4):
            draw.line([(i, 0), (400 - i, 400)], fill=(i % 255, 80, 160), width=2)
        buffer = io.BytesIO()
        noisy.save(buffer, 'JPEG', quality=100)
        ref = put_artifact(buffer.getvalue(), "noisy.jpg")

        request = request_for(ref, OperationKind.COMPRESS, target="jpg", quality=30)
        artifact = await image_processor.transform(request)

        assert artifact.size_bytes < len(buffer.getvalue())

    @pytest.mark.asyncio
    async def test_collage_grid(self, image_processor, artifact_store, put_artifact):
        refs = [
            put_artifact(image_bytes((200, 100), color=color), f"{color}.jpg")
            for color in ('red', 'green', 'blue')
        ]
        request = request_for(None, OperationKind.COLLAGE, target="png", refs=refs)

        artifact = await image_processor.transform(request)

        img = await self.load(artifact_store, artifact)
        # 3 images -> 2 columns x 2 rows of 100px cells
        assert img.size == (200, 200)
        assert artifact.metadata['columns'] == 2
        assert artifact.metadata['image_count'] == 3
        # empty fourth cell stays white
        assert img.convert('RGB').getpixel((150, 150)) == (255, 255, 255)
        # first cell holds the first image, in input order
        red, green, blue = img.convert('RGB').getpixel((50, 50))
        assert red > 200 and green < 60 and blue < 60

    @pytest.mark.asyncio
    async def test_corrupt_input(self, image_processor, put_artifact):
        ref = put_artifact(b"not an image", "broken.jpg")

        with pytest.raises(BackendFailure):
            await image_processor.transform(request_for(ref))


class TestImageCleanupProcessor:
    """Test cases for ImageCleanupProcessor"""

    @pytest.fixture
    def cleanup_processor(self, artifact_store, test_settings):
        return ImageCleanupProcessor(artifact_store, test_settings)

    @pytest.mark.asyncio
    async def test_remove_background(self, cleanup_processor, artifact_store, put_artifact):
        img = Image.new('RGB', (100, 100), 'white')
        img.paste((200, 0, 0), (30, 30, 70, 70))
        buffer = io.BytesIO()
        img.save(buffer, 'PNG')
        ref = put_artifact(buffer.getvalue(), "subject.png")

        request = request_for(ref, OperationKind.REMOVE_BACKGROUND, source="png", target="png")
        artifact = await cleanup_processor.transform(request)

        result = Image.open(io.BytesIO(await artifact_store.read(artifact.handle)))
        assert result.format == 'PNG'
        assert result.mode == 'RGBA'
        assert result.getpixel((5, 5))[3] == 0
        assert result.getpixel((50, 50))[3] == 255
        assert artifact.metadata['best_effort'] is True

    @pytest.mark.asyncio
    async def test_remove_watermark_blurs_region(self, cleanup_processor, artifact_store, put_artifact):
        img = Image.new('RGB', (100, 100), 'white')
        for x in range(10, 60, 2):
            img.paste((0, 0, 0), (x, 10, x + 1, 30))
        buffer = io.BytesIO()
        img.save(buffer, 'PNG')
        ref = put_artifact(buffer.getvalue(), "marked.png")

        region = {"x": 0, "y": 0, "width": 80, "height": 40}
        request = request_for(ref, OperationKind.REMOVE_WATERMARK, source="png", target="png", region=region)

        await cleanup_processor.preflight(request)
        artifact = await cleanup_processor.transform(request)

        result = Image.open(io.BytesIO(await artifact_store.read(artifact.handle))).convert('RGB')
        assert result.size == (100, 100)
        # stripes are smeared into grey
        assert result.getpixel((10, 20)) != (0, 0, 0)
        # outside the region nothing changes
        assert result.getpixel((90, 90)) == (255, 255, 255)

    @pytest.mark.asyncio
    async def test_watermark_region_outside_bounds(self, cleanup_processor, put_artifact, sample_image_bytes):
        ref = put_artifact(sample_image_bytes, "small.jpg")
        region = {"x": 90, "y": 90, "width": 20, "height": 20}

        with pytest.raises(ValidationError):
            await cleanup_processor.preflight(
                request_for(ref, OperationKind.REMOVE_WATERMARK, source="jpg", target="jpg", region=region)
            )

    @pytest.mark.asyncio
    async def test_remove_watermark_without_region(self, cleanup_processor, artifact_store, put_artifact, sample_image_bytes):
        ref = put_artifact(sample_image_bytes, "plain.jpg")
        request = request_for(ref, OperationKind.REMOVE_WATERMARK, source="jpg", target="jpg")

        await cleanup_processor.preflight(request)
        artifact = await cleanup_processor.transform(request)

        result = Image.open(io.BytesIO(await artifact_store.read(artifact.handle)))
        assert result.size == (100, 100)
