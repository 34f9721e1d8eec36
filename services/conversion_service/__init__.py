"""
Conversion Service - document and image transformation service

This service routes conversion and editing requests to format-specific backends:
- Office document conversion (LibreOffice)
- Raster image processing (resize, crop, rotate, re-encode, compress, collage)
- Vector image rasterisation (SVG)
- PDF composition, editing and page rendering
- Optical character recognition
- Batch execution with per-item failure isolation
"""

__version__ = "1.0.0"
__author__ = "Cloud Native File Operations Platform"
