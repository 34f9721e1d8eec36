from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Conversion Service"
    environment: str = "development"
    debug: bool = False

    # Artifact storage settings
    storage_dir: str = "/tmp/conversion/artifacts"
    temp_dir: str = "/tmp/conversion/work"

    # Execution settings
    max_concurrent_jobs: int = 4
    max_batch_size: int = 100

    # Office engine settings
    soffice_path: str = "soffice"
    office_timeout_seconds: int = 120

    # Image settings
    default_image_quality: int = 90
    default_compress_quality: int = 80
    svg_default_width: int = 1920
    svg_default_height: int = 1080
    collage_cell_size: int = 500

    # PDF settings
    pdf_render_dpi: int = 150

    # OCR settings
    ocr_default_language: str = "eng"

    # Google Cloud settings
    google_cloud_project: str = "PROJECT_ID"
    datastore_namespace: str = "conversion-service"
    datastore_enabled: bool = False

    # Audit settings
    audit_webhook_url: Optional[str] = None
    audit_webhook_timeout_seconds: float = 5.0

    # Security settings
    allowed_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()
