from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
import os

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application settings
    app_name: str = "Image Labeling Service"
    environment: str = os.getenv("PYTHON_ENV", "development")

    # Google Cloud settings
    google_cloud_project: str = os.getenv("GOOGLE_CLOUD_PROJECT", "PROJECT_ID")

    # Storage settings
    raw_bucket: str = os.getenv("RAW_BUCKET", "image-labeling-raw")
    derivative_bucket: str = os.getenv("DERIVATIVE_BUCKET", "image-labeling-resized")
    key_prefix: str = os.getenv("KEY_PREFIX", "")  # prepended to every owner namespace
    storage_timeout_seconds: float = float(os.getenv("STORAGE_TIMEOUT_SECONDS", "30"))

    # Database settings
    datastore_namespace: str = os.getenv("DATASTORE_NAMESPACE", "image-labeling")
    image_record_kind: str = "ImageRecord"
    failure_kind: str = "PipelineFailure"
    datastore_timeout_seconds: float = float(os.getenv("DATASTORE_TIMEOUT_SECONDS", "10"))

    # Derivative settings
    derivative_max_width: int = int(os.getenv("DERIVATIVE_MAX_WIDTH", "100"))
    derivative_max_height: int = int(os.getenv("DERIVATIVE_MAX_HEIGHT", "100"))
    derivative_quality: int = int(os.getenv("DERIVATIVE_QUALITY", "85"))
    accepted_extensions: str = os.getenv("ACCEPTED_EXTENSIONS", ".jpg,.jpeg,.png,.gif,.bmp,.tiff,.webp")
    max_image_size: int = int(os.getenv("MAX_IMAGE_SIZE", "20971520"))  # 20MB

    # Recognition engine settings
    recognition_endpoint: str = os.getenv("RECOGNITION_ENDPOINT", "http://localhost:9000/v1/detect-labels")
    recognition_api_key: Optional[str] = os.getenv("RECOGNITION_API_KEY")
    recognition_timeout_seconds: float = float(os.getenv("RECOGNITION_TIMEOUT_SECONDS", "30"))
    max_labels: int = int(os.getenv("MAX_LABELS", "10"))
    min_confidence: float = float(os.getenv("MIN_CONFIDENCE", "0.7"))

    # Identity provider settings
    identity_userinfo_endpoint: str = os.getenv("IDENTITY_USERINFO_ENDPOINT", "http://localhost:9001/userinfo")
    identity_timeout_seconds: float = float(os.getenv("IDENTITY_TIMEOUT_SECONDS", "10"))

    # Retry settings
    retry_max_attempts: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "4"))
    retry_base_delay_seconds: float = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "0.5"))
    retry_max_delay_seconds: float = float(os.getenv("RETRY_MAX_DELAY_SECONDS", "20"))
    retry_backoff_multiplier: float = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0"))
    retry_jitter: bool = os.getenv("RETRY_JITTER", "true").lower() == "true"
    retry_history_hours: int = int(os.getenv("RETRY_HISTORY_HOURS", "24"))
    retry_history_max_operations: int = int(os.getenv("RETRY_HISTORY_MAX_OPERATIONS", "1000"))

    # Worker settings
    stage_workers: int = int(os.getenv("STAGE_WORKERS", "4"))
    max_redeliveries: int = int(os.getenv("MAX_REDELIVERIES", "3"))

    # Reconciliation settings
    reconcile_interval_seconds: int = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "0"))  # 0 disables
    reconcile_stale_after_seconds: int = int(os.getenv("RECONCILE_STALE_AFTER_SECONDS", "900"))

    # API settings
    allowed_origins: str = os.getenv("ALLOWED_ORIGINS", "*")
    event_push_token: Optional[str] = os.getenv("EVENT_PUSH_TOKEN")
    list_page_size: int = int(os.getenv("LIST_PAGE_SIZE", "100"))

    @property
    def allowed_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def accepted_extension_list(self) -> List[str]:
        return [ext.strip().lower() for ext in self.accepted_extensions.split(",") if ext.strip()]
