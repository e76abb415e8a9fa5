from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # AI providers
    openai_api_key: str = ""
    gemini_api_key: str = ""

    # Assistant profiles, one per department
    assistant_id_email_marketing: str = "asst_tMb6dYkeLo83T67GcdqTmGQL"
    assistant_id_google_sem: str = "asst_4nGR0L10K8L2NOAJ7IlBksvx"
    assistant_id_groupon: str = "asst_RmvnUzt5yRA64OBROEBzaKbU"

    # Assistant run polling: text_poll_max_attempts polls, one every interval
    text_poll_max_attempts: int = 60
    text_poll_interval_seconds: float = 1.0

    # Image models
    image_model: str = "imagen-4.0-generate-preview-06-06"
    image_edit_model: str = "gemini-2.5-flash-image-preview"
    # Upper bound for Imagen / Gemini HTTP calls (no bound when 0)
    ai_request_timeout_seconds: float = 120.0

    # Database
    database_url: str = "sqlite:///./generapix.db"

    # Persistent storage base path for uploaded CSVs and generated images.
    # Override via STORAGE_PATH env var.
    storage_path: str = "./storage"

    # Bulk processing
    bulk_max_rows: int = 50
    bulk_default_batch_size: int = 3
    bulk_max_batch_size: int = 10
    bulk_chunk_delay_seconds: float = 2.0
    # Used only for the estimatedTimeMinutes hint (rows * 45s)
    bulk_seconds_per_row_estimate: int = 45
    # Attempts for persisting chunk progress before the batch is failed
    bulk_persist_attempts: int = 3
    # A processing batch whose lease is older than this may be taken over
    bulk_lease_seconds: int = 900
    # Restart queued and orphaned batches when the server starts
    bulk_resume_on_startup: bool = True

    # CSV/XLSX file uploads
    csv_max_file_bytes: int = 10 * 1024 * 1024

    # Frontend
    frontend_url: str = "http://localhost:3000"

    log_level: str = "INFO"

    model_config = {"env_file": ".env"}


settings = Settings()
