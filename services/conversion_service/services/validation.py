"""
Static request validation

Checks that need nothing but the request itself: option shapes and ranges,
and batch cardinality per operation. Content-dependent checks (does the crop
region fit the image, does the page exist) belong to the backend preflight.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from ..errors import ValidationError
from ..models import OperationKind

logger = logging.getLogger(__name__)

HEX_COLOR_PATTERN = re.compile(r'^#[0-9a-fA-F]{6}$')
LANGUAGE_PATTERN = re.compile(r'^[a-z]{3}(_[a-z]+)?(\+[a-z]{3}(_[a-z]+)?)*$')

RESIZE_FIT_MODES = ('contain', 'fill')
ANNOTATION_TYPES = ('text', 'highlight', 'rect', 'freetext')
COLLAGE_LAYOUTS = ('grid',)


@dataclass(frozen=True)
class OperationPolicy:
    """How many inputs an operation takes and whether they form one output"""
    min_items: int = 1
    aggregate: bool = False


OPERATION_POLICIES = {
    OperationKind.MERGE: OperationPolicy(min_items=2, aggregate=True),
    OperationKind.COLLAGE: OperationPolicy(min_items=2, aggregate=True),
    OperationKind.IMAGES_TO_PDF: OperationPolicy(min_items=1, aggregate=True),
}


def policy_for(operation: OperationKind) -> OperationPolicy:
    return OPERATION_POLICIES.get(OperationKind(operation), OperationPolicy())


def _number(options: Dict[str, Any], name: str, minimum: Optional[float] = None,
            maximum: Optional[float] = None, required: bool = False, integer: bool = False):
    value = options.get(name)
    if value is None:
        if required:
            raise ValidationError(f"Option '{name}' is required", field=name)
        return None

    expected = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, expected):
        kind = "an integer" if integer else "a number"
        raise ValidationError(f"Option '{name}' must be {kind}", field=name)

    if minimum is not None and value < minimum:
        raise ValidationError(f"Option '{name}' must be >= {minimum}", field=name)
    if maximum is not None and value > maximum:
        raise ValidationError(f"Option '{name}' must be <= {maximum}", field=name)
    return value


def _region(value: Any, name: str = 'region'):
    if not isinstance(value, dict):
        raise ValidationError(f"Option '{name}' must be an object with x, y, width and height", field=name)

    _number(value, 'x', minimum=0, required=True, integer=True)
    _number(value, 'y', minimum=0, required=True, integer=True)
    _number(value, 'width', minimum=1, required=True, integer=True)
    _number(value, 'height', minimum=1, required=True, integer=True)


def _quality(options: Dict[str, Any]):
    _number(options, 'quality', minimum=1, maximum=100, integer=True)


def _check_color(value: Any, field: str):
    if value is not None and (not isinstance(value, str) or not HEX_COLOR_PATTERN.match(value)):
        raise ValidationError(f"Option '{field}' must be a hex colour like #FF0000", field=field)


def _validate_convert(options):
    _quality(options)
    _number(options, 'width', minimum=1, integer=True)
    _number(options, 'height', minimum=1, integer=True)
    _number(options, 'page', minimum=0, integer=True)
    _number(options, 'dpi', minimum=36, maximum=600, integer=True)


def _validate_resize(options):
    width = _number(options, 'width', minimum=1, integer=True)
    height = _number(options, 'height', minimum=1, integer=True)
    if width is None and height is None:
        raise ValidationError("Resize requires 'width' or 'height'", field='width')

    fit = options.get('fit', 'contain')
    if fit not in RESIZE_FIT_MODES:
        raise ValidationError(f"Option 'fit' must be one of {', '.join(RESIZE_FIT_MODES)}", field='fit')
    _quality(options)


def _validate_crop(options):
    _region(options.get('region'))
    _quality(options)


def _validate_rotate(options):
    _number(options, 'degrees', required=True)
    _quality(options)


def _validate_compress(options):
    _quality(options)


def _validate_remove_watermark(options):
    if options.get('region') is not None:
        _region(options['region'])
    _number(options, 'blur_radius', minimum=1, maximum=100)


def _validate_remove_background(options):
    _number(options, 'threshold', minimum=0, maximum=255, integer=True)


def _validate_add_text(options):
    text = options.get('text')
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Option 'text' must be a non-empty string", field='text')

    _number(options, 'page', minimum=0, integer=True)
    _number(options, 'x', minimum=0)
    _number(options, 'y', minimum=0)
    _number(options, 'font_size', minimum=1, maximum=500)
    _check_color(options.get('color'), 'color')


def _validate_annotate(options):
    annotations = options.get('annotations')
    if not isinstance(annotations, list) or not annotations:
        raise ValidationError("Option 'annotations' must be a non-empty list", field='annotations')

    for index, annotation in enumerate(annotations):
        field = f'annotations[{index}]'
        if not isinstance(annotation, dict):
            raise ValidationError(f"{field} must be an object", field=field)

        if annotation.get('type') not in ANNOTATION_TYPES:
            raise ValidationError(
                f"{field}.type must be one of {', '.join(ANNOTATION_TYPES)}", field=field
            )

        _number(annotation, 'page', minimum=0, integer=True)
        _number(annotation, 'x', minimum=0, required=True)
        _number(annotation, 'y', minimum=0, required=True)

        if annotation['type'] in ('highlight', 'rect', 'freetext'):
            _number(annotation, 'width', minimum=1, required=True)
            _number(annotation, 'height', minimum=1, required=True)

        if annotation['type'] in ('text', 'freetext'):
            content = annotation.get('content')
            if not isinstance(content, str) or not content:
                raise ValidationError(f"{field}.content must be a non-empty string", field=field)

        _number(annotation, 'font_size', minimum=1, maximum=500)
        _check_color(annotation.get('color'), f'{field}.color')


def _validate_ocr(options):
    language = options.get('language')
    if language is not None and (not isinstance(language, str) or not LANGUAGE_PATTERN.match(language)):
        raise ValidationError(
            "Option 'language' must be a Tesseract language code such as 'eng' or 'eng+deu'",
            field='language'
        )


def _validate_collage(options):
    layout = options.get('layout', 'grid')
    if layout not in COLLAGE_LAYOUTS:
        raise ValidationError(f"Collage layout '{layout}' is not supported", field='layout')
    _number(options, 'cell_size', minimum=16, maximum=4000, integer=True)
    _quality(options)


VALIDATORS = {
    OperationKind.CONVERT: _validate_convert,
    OperationKind.RESIZE: _validate_resize,
    OperationKind.CROP: _validate_crop,
    OperationKind.ROTATE: _validate_rotate,
    OperationKind.COMPRESS: _validate_compress,
    OperationKind.REMOVE_BACKGROUND: _validate_remove_background,
    OperationKind.REMOVE_WATERMARK: _validate_remove_watermark,
    OperationKind.ADD_TEXT: _validate_add_text,
    OperationKind.ANNOTATE: _validate_annotate,
    OperationKind.OCR: _validate_ocr,
    OperationKind.COLLAGE: _validate_collage,
}


def validate_options(operation: OperationKind, options: Optional[Dict[str, Any]]) -> None:
    """
    Validate operation options without touching any artifact

    Args:
        operation: Operation the options belong to
        options: Operation-specific options (None is treated as empty)

    Raises:
        ValidationError: On the first malformed or out-of-range option
    """
    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise ValidationError("Options must be an object", field='options')

    validator = VALIDATORS.get(OperationKind(operation))
    if validator:
        validator(options)
