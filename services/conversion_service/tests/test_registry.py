import pytest

from services.conversion_service.models import AdapterId, OperationKind
from services.conversion_service.services.registry import (
    CapabilityEntry, CapabilityRegistry, default_capabilities
)


class TestCapabilityRegistry:
    """Test cases for CapabilityRegistry"""

    def test_docx_to_pdf_resolves_to_office(self, registry):
        assert registry.resolve("docx", "pdf", OperationKind.CONVERT) == AdapterId.OFFICE

    def test_docx_to_xlsx_is_unsupported(self, registry):
        assert registry.resolve("docx", "xlsx", OperationKind.CONVERT) is None

    def test_resolve_is_case_insensitive_and_ignores_leading_dot(self, registry):
        assert registry.resolve(".DOCX", "PDF", "convert") == AdapterId.OFFICE
        assert registry.resolve("Jpg", ".png", OperationKind.CONVERT) == AdapterId.RASTER_IMAGE

    def test_jpg_and_jpeg_are_both_registered(self, registry):
        assert registry.resolve("jpg", "png", OperationKind.CONVERT) == AdapterId.RASTER_IMAGE
        assert registry.resolve("jpeg", "png", OperationKind.CONVERT) == AdapterId.RASTER_IMAGE
        assert registry.resolve("jpg", "jpeg", OperationKind.CONVERT) == AdapterId.RASTER_IMAGE

    def test_asymmetric_support(self, registry):
        assert registry.resolve("pdf", "png", OperationKind.CONVERT) == AdapterId.PDF_RENDER
        assert registry.resolve("png", "pdf", OperationKind.CONVERT) == AdapterId.PDF_COMPOSE
        assert registry.resolve("pdf", "xlsx", OperationKind.CONVERT) is None

    @pytest.mark.parametrize("source,target,operation", [
        ("", "", "convert"),
        ("exe", "pdf", "convert"),
        ("docx", "pdf", "teleport"),
        ("pdf", "pdf", "crop"),
        (None, "pdf", "convert"),
    ])
    def test_resolve_never_raises_for_unmapped_input(self, registry, source, target, operation):
        assert registry.resolve(source, target, operation) is None

    def test_resolve_is_idempotent(self, registry):
        first = registry.resolve("svg", "png", OperationKind.CONVERT)
        second = registry.resolve("svg", "png", OperationKind.CONVERT)
        assert first == second == AdapterId.VECTOR_IMAGE

    def test_edit_operations(self, registry):
        assert registry.resolve("png", "png", OperationKind.CROP) == AdapterId.RASTER_IMAGE
        assert registry.resolve("jpg", "png", OperationKind.REMOVE_BACKGROUND) == AdapterId.IMAGE_CLEANUP
        assert registry.resolve("pdf", "pdf", OperationKind.ANNOTATE) == AdapterId.PDF_EDIT
        assert registry.resolve("pdf", "pdf", OperationKind.COMPRESS) == AdapterId.PDF_EDIT
        assert registry.resolve("pdf", "pdf", OperationKind.MERGE) == AdapterId.PDF_COMPOSE
        assert registry.resolve("png", "txt", OperationKind.OCR) == AdapterId.OCR
        assert registry.resolve("jpg", "jpg", OperationKind.COLLAGE) == AdapterId.RASTER_IMAGE
        # crop does not change the format
        assert registry.resolve("png", "jpg", OperationKind.CROP) is None

    def test_supported_targets(self, registry):
        assert registry.supported_targets("docx") == {"pdf", "txt", "html"}
        assert registry.supported_targets("unknown") == set()
        assert registry.supported_targets("pdf", OperationKind.CONVERT) == {"docx", "doc", "png", "jpg"}

    def test_supported_operations(self, registry):
        operations = registry.supported_operations("pdf", "pdf")
        assert operations == {
            OperationKind.COMPRESS, OperationKind.ANNOTATE,
            OperationKind.ADD_TEXT, OperationKind.MERGE
        }

    def test_list_capabilities_only_lists_conversions(self, registry):
        capabilities = registry.list_capabilities()

        assert capabilities["xlsx"] == ["csv", "pdf"]
        assert capabilities["svg"] == ["jpg", "pdf", "png"]
        assert "txt" not in capabilities["png"]

    def test_duplicate_entries_are_rejected(self):
        entry = CapabilityEntry("docx", "pdf", OperationKind.CONVERT, AdapterId.OFFICE)
        duplicate = CapabilityEntry("DOCX", ".pdf", OperationKind.CONVERT, AdapterId.PDF_EDIT)

        with pytest.raises(ValueError):
            CapabilityRegistry([entry, duplicate])

    def test_default_table_has_no_duplicates(self):
        entries = default_capabilities()
        assert len(CapabilityRegistry(entries)) == len(entries)

    def test_custom_entries(self):
        registry = CapabilityRegistry([
            CapabilityEntry("md", "pdf", OperationKind.CONVERT, AdapterId.OFFICE)
        ])

        assert registry.resolve("md", "pdf", OperationKind.CONVERT) == AdapterId.OFFICE
        assert registry.resolve("docx", "pdf", OperationKind.CONVERT) is None
        assert len(registry) == 1
