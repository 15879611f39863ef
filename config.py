"""
Application configuration using environment variables
"""
from pydantic_settings import BaseSettings
from typing import Optional, List
from dotenv import load_dotenv

# Load .env file
load_dotenv()


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./data/enrichment.db"
    DATA_DIR: str = "./data"

    # App settings
    DEBUG: bool = False
    ALLOWED_ORIGINS: str = "*"  # Comma-separated list

    # ==========================================================================
    # AI PROVIDERS
    # ==========================================================================

    # Azure OpenAI (per-request generation)
    AZURE_OPENAI_ENDPOINT: Optional[str] = None
    AZURE_OPENAI_API_KEY: Optional[str] = None
    AZURE_OPENAI_API_VERSION: str = "2024-02-15-preview"
    AZURE_OPENAI_GPT5_API_VERSION: str = "2024-12-01-preview"

    # Google Gemini (API key or Vertex AI project)
    GEMINI_API_KEY: Optional[str] = None
    GOOGLE_CLOUD_PROJECT: Optional[str] = None
    GOOGLE_CLOUD_LOCATION: str = "us-central1"

    # Azure OpenAI Batch API
    AZURE_BATCH_ENDPOINT: Optional[str] = None
    AZURE_BATCH_API_KEY: Optional[str] = None
    AZURE_BATCH_DEPLOYMENT: str = "gpt-4.1-mini"
    AZURE_BATCH_API_VERSION: str = "2024-10-21"

    # Email lookup provider
    MAILTESTER_NINJA_API_KEY: Optional[str] = None
    MAILTESTER_NINJA_URL: str = "https://happy.mailtester.ninja/ninja"

    # ==========================================================================
    # SCHEDULER
    # ==========================================================================

    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    ENRICHMENT_POLL_SECONDS: int = 60
    BATCH_POLL_SECONDS: int = 300
    EMAIL_POLL_SECONDS: int = 60
    FORMULA_POLL_SECONDS: int = 30

    # ==========================================================================
    # ENGINE TUNABLES
    # ==========================================================================

    # Synchronous enrichment
    ENRICHMENT_BATCH_SIZE: int = 50
    AI_TIMEOUT_SECONDS: float = 30.0
    STALE_JOB_MINUTES: int = 10
    DEFAULT_MAX_OUTPUT_TOKENS: int = 8192

    # Provider batch submission
    MAX_BATCH_ROWS: int = 25000

    # Email finder
    EMAIL_BATCH_SIZE: int = 50
    EMAIL_STALE_JOB_MINUTES: int = 30
    EMAIL_MAX_EXECUTION_SECONDS: float = 55.0
    EMAIL_BATCH_TIME_RESERVE_SECONDS: float = 15.0
    EMAIL_RATE_LIMIT_MS: int = 170
    EMAIL_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Formula jobs
    FORMULA_BATCH_SIZE: int = 200

    # Row document writes
    ROW_UPDATE_CHUNK_SIZE: int = 1000
    ROW_UPDATE_PARALLEL_BATCHES: int = 5
    LOCAL_ROW_UPDATE_CHUNK_SIZE: int = 250

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list"""
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
