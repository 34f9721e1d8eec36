import asyncio
import io
import math
from typing import Any, Dict, List, Optional, Tuple
import logging

from PIL import Image, ImageChops, ImageFilter, ImageOps, UnidentifiedImageError

from ..errors import BackendFailure, ValidationError
from ..models import AdapterId, OperationKind, OutputArtifact
from .backend import BackendAdapter, TransformRequest

logger = logging.getLogger(__name__)

PIL_FORMATS = {
    'jpg': 'JPEG',
    'jpeg': 'JPEG',
    'png': 'PNG',
    'webp': 'WEBP',
    'gif': 'GIF',
}

OUTPUT_SUFFIXES = {
    OperationKind.CONVERT: 'converted',
    OperationKind.RESIZE: 'resized',
    OperationKind.CROP: 'cropped',
    OperationKind.ROTATE: 'rotated',
    OperationKind.COMPRESS: 'compressed',
    OperationKind.COLLAGE: 'collage',
    OperationKind.REMOVE_BACKGROUND: 'no_background',
    OperationKind.REMOVE_WATERMARK: 'cleaned',
}


def open_image(data: bytes) -> Image.Image:
    """Decode image bytes, raising BackendFailure for unreadable input"""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise BackendFailure(f"Cannot decode image: {str(e)}")
    return ImageOps.exif_transpose(img) or img


def encode_image(img: Image.Image, target_format: str, quality: Optional[int] = None) -> bytes:
    """
    Encode an image into the target format

    JPEG has no alpha channel, so transparent images are flattened on a white
    background first.
    """
    pil_format = PIL_FORMATS.get(target_format)
    if pil_format is None:
        raise BackendFailure(f"Unsupported image output format: {target_format}")

    if pil_format == 'JPEG' and img.mode != 'RGB':
        if img.mode in ('RGBA', 'LA', 'P'):
            if img.mode != 'RGBA':
                img = img.convert('RGBA')
            background = Image.new('RGB', img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            img = background
        else:
            img = img.convert('RGB')

    save_kwargs: Dict[str, Any] = {'format': pil_format}
    if pil_format in ('JPEG', 'WEBP'):
        save_kwargs.update({'quality': quality or 90, 'optimize': True})
    elif pil_format == 'PNG':
        save_kwargs['optimize'] = True

    buffer = io.BytesIO()
    img.save(buffer, **save_kwargs)
    return buffer.getvalue()


def check_region(region: Dict[str, int], size: Tuple[int, int], what: str = "Region"):
    """Raise ValidationError unless the region lies inside an image of the given size"""
    width, height = size
    if region['x'] + region['width'] > width or region['y'] + region['height'] > height:
        raise ValidationError(
            f"{what} ({region['x']}, {region['y']}, {region['width']}x{region['height']}) "
            f"exceeds image bounds {width}x{height}",
            field='region'
        )


def region_box(region: Dict[str, int]) -> Tuple[int, int, int, int]:
    return (
        region['x'],
        region['y'],
        region['x'] + region['width'],
        region['y'] + region['height']
    )


class ImageProcessor(BackendAdapter):
    """Raster image backend: re-encode, resize, crop, rotate, compress and collage"""

    adapter_id = AdapterId.RASTER_IMAGE

    async def preflight(self, request: TransformRequest) -> None:
        if request.operation != OperationKind.CROP:
            return

        img = open_image(await self._read(request.input_ref))
        check_region(request.options['region'], img.size, "Crop region")

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        if request.operation == OperationKind.COLLAGE:
            images = [await self._read(ref) for ref in request.input_refs]
            data, metadata = await asyncio.to_thread(self._collage, images, request)
        else:
            source = await self._read(request.input_ref)
            data, metadata = await asyncio.to_thread(self._process, source, request)

        filename = self._output_filename(OUTPUT_SUFFIXES[request.operation], request.target_format)
        logger.info(f"Image {request.operation.value} produced {filename} ({len(data)} bytes)")
        return await self._save(data, filename, **metadata)

    def _process(self, data: bytes, request: TransformRequest) -> Tuple[bytes, Dict[str, Any]]:
        options = request.options
        img = open_image(data)
        original_size = img.size
        quality = options.get('quality', self.settings.default_image_quality)

        if request.operation == OperationKind.CONVERT:
            if options.get('width') or options.get('height'):
                img = self._resize(img, options.get('width'), options.get('height'), 'contain')

        elif request.operation == OperationKind.RESIZE:
            img = self._resize(img, options.get('width'), options.get('height'), options.get('fit', 'contain'))

        elif request.operation == OperationKind.CROP:
            img = img.crop(region_box(options['region']))

        elif request.operation == OperationKind.ROTATE:
            img = self._rotate(img, options['degrees'])

        elif request.operation == OperationKind.COMPRESS:
            quality = options.get('quality', self.settings.default_compress_quality)

        else:
            raise BackendFailure(f"Raster backend cannot perform '{request.operation.value}'")

        output = encode_image(img, request.target_format, quality)
        return output, {
            'original_dimensions': list(original_size),
            'dimensions': list(img.size),
            'format': request.target_format,
            'original_size_bytes': len(data),
        }

    def _resize(self, img: Image.Image, width: Optional[int], height: Optional[int], fit: str) -> Image.Image:
        if fit == 'fill':
            return img.resize((width or img.width, height or img.height), Image.Resampling.LANCZOS)

        # contain: keep aspect ratio and never enlarge
        img = img.copy()
        img.thumbnail((width or img.width, height or img.height), Image.Resampling.LANCZOS)
        return img

    def _rotate(self, img: Image.Image, degrees: float) -> Image.Image:
        if img.mode == 'P':
            img = img.convert('RGBA')

        fill = (0, 0, 0, 0) if img.mode == 'RGBA' else 'white'
        # PIL rotates counter-clockwise; positive degrees mean clockwise
        return img.rotate(-degrees, expand=True, fillcolor=fill, resample=Image.Resampling.BICUBIC)

    def _collage(self, sources: List[bytes], request: TransformRequest) -> Tuple[bytes, Dict[str, Any]]:
        options = request.options
        cell = options.get('cell_size', self.settings.collage_cell_size)
        columns = math.ceil(math.sqrt(len(sources)))
        rows = math.ceil(len(sources) / columns)

        canvas = Image.new('RGB', (columns * cell, rows * cell), (255, 255, 255))

        for index, data in enumerate(sources):
            img = open_image(data)
            if img.mode != 'RGBA':
                img = img.convert('RGBA')
            img.thumbnail((cell, cell), Image.Resampling.LANCZOS)

            column, row = index % columns, index // columns
            offset = (
                column * cell + (cell - img.width) // 2,
                row * cell + (cell - img.height) // 2
            )
            canvas.paste(img, offset, mask=img)

        output = encode_image(canvas, request.target_format, options.get('quality', self.settings.default_image_quality))
        return output, {
            'dimensions': list(canvas.size),
            'columns': columns,
            'rows': rows,
            'image_count': len(sources),
            'format': request.target_format,
        }


class ImageCleanupProcessor(BackendAdapter):
    """Best-effort background and watermark removal.

    Background removal keys out every pixel close to the colour of the
    top-left corner. Watermark removal blurs the given region in place. Neither
    is pixel-perfect; both only promise an image of the same dimensions.
    """

    adapter_id = AdapterId.IMAGE_CLEANUP

    DEFAULT_BACKGROUND_THRESHOLD = 30
    DEFAULT_BLUR_RADIUS = 8

    async def preflight(self, request: TransformRequest) -> None:
        region = request.options.get('region')
        if request.operation != OperationKind.REMOVE_WATERMARK or region is None:
            return

        img = open_image(await self._read(request.input_ref))
        check_region(region, img.size, "Watermark region")

    async def transform(self, request: TransformRequest) -> OutputArtifact:
        source = await self._read(request.input_ref)

        if request.operation == OperationKind.REMOVE_BACKGROUND:
            data = await asyncio.to_thread(self._remove_background, source, request.options)
        elif request.operation == OperationKind.REMOVE_WATERMARK:
            data = await asyncio.to_thread(self._remove_watermark, source, request)
        else:
            raise BackendFailure(f"Image cleanup backend cannot perform '{request.operation.value}'")

        filename = self._output_filename(OUTPUT_SUFFIXES[request.operation], request.target_format)
        return await self._save(data, filename, format=request.target_format, best_effort=True)

    def _remove_background(self, data: bytes, options: Dict[str, Any]) -> bytes:
        threshold = options.get('threshold', self.DEFAULT_BACKGROUND_THRESHOLD)
        img = open_image(data).convert('RGBA')

        rgb = img.convert('RGB')
        key = Image.new('RGB', img.size, rgb.getpixel((0, 0)))
        red, green, blue = ImageChops.difference(rgb, key).split()
        distance = ImageChops.lighter(ImageChops.lighter(red, green), blue)

        keep = distance.point(lambda value: 255 if value > threshold else 0)
        alpha = ImageChops.multiply(img.getchannel('A'), keep)
        img.putalpha(alpha)

        return encode_image(img, 'png')

    def _remove_watermark(self, data: bytes, request: TransformRequest) -> bytes:
        options = request.options
        img = open_image(data)
        region = options.get('region')

        if region is not None:
            if img.mode in ('P', '1'):
                img = img.convert('RGBA')
            box = region_box(region)
            radius = options.get('blur_radius', self.DEFAULT_BLUR_RADIUS)
            patch = img.crop(box).filter(ImageFilter.GaussianBlur(radius))
            img = img.copy()
            img.paste(patch, box[:2])
        else:
            logger.info("No watermark region given, re-encoding image unchanged")

        return encode_image(img, request.target_format, self.settings.default_image_quality)
