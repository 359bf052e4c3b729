from pydantic import model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/recruitment.db"
    openai_api_key: str = ""

    # Redis configuration
    redis_url: str = "redis://localhost:6379"

    # Celery configuration
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"

    # File storage
    upload_dir: str = "./data/uploads"
    max_attachment_size_mb: int = 10
    stored_file_retention_days: int = 30
    retention_interval_hours: int = 24

    # OCR (tesseract)
    tesseract_cmd: str = ""
    ocr_languages: str = "eng+vie"
    ocr_fallback_language: str = "eng"
    ocr_timeout_seconds: int = 60
    ocr_max_workers: int = 2

    # Embedding provider: "openai", "local" or "mock"
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    # Local embedding model (when provider=local)
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_max_chars: int = 8000
    embedding_chunk_size: int = 1200
    embedding_max_retries: int = 3
    embedding_retry_base_delay: float = 1.0
    embedding_retry_max_delay: float = 30.0
    embedding_breaker_max_failures: int = 5
    embedding_breaker_reset_seconds: int = 60
    embedding_breaker_half_open_successes: int = 3

    # LLM summary (empty key = deterministic summary only)
    summary_model: str = "gpt-4o-mini"

    # Screening
    screening_enabled: bool = True
    screening_auto_trigger: bool = True
    screening_default_priority: int = 0
    screening_max_retries: int = 3
    screening_retry_delay_seconds: int = 2
    screening_retry_max_delay_seconds: int = 300
    screening_timeout_seconds: int = 300

    # Overall score weights (must sum to 1.0)
    weight_vector: float = 0.4
    weight_skills: float = 0.3
    weight_experience: float = 0.2
    weight_education: float = 0.1

    # Fit tier thresholds (0-100)
    threshold_strong: float = 80.0
    threshold_good: float = 65.0
    threshold_moderate: float = 50.0

    # Inbound email (Brevo)
    brevo_api_key: str = ""
    brevo_attachment_url: str = "https://api.brevo.com/v3/inbound/attachments/{token}"
    brevo_email_url: str = "https://api.brevo.com/v3/smtp/email"
    inbound_webhook_secret: str = ""
    attachment_download_max_retries: int = 3
    attachment_download_timeout_seconds: int = 30
    notification_sender_email: str = "recruitment@example.com"
    notification_sender_name: str = "Recruitment Team"

    class Config:
        env_file = ".env"

    @model_validator(mode="after")
    def check_weights(self) -> "Settings":
        total = (
            self.weight_vector + self.weight_skills +
            self.weight_experience + self.weight_education
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Score weights must sum to 1.0, got {total:.3f}")
        return self

    @property
    def score_weights(self) -> dict:
        return {
            "vector": self.weight_vector,
            "skills": self.weight_skills,
            "experience": self.weight_experience,
            "education": self.weight_education,
        }

    @property
    def fit_thresholds(self) -> dict:
        return {
            "strong_fit": self.threshold_strong,
            "good_fit": self.threshold_good,
            "moderate_fit": self.threshold_moderate,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
