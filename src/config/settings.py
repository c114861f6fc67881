from pydantic_settings import BaseSettings
from typing import Optional
from pathlib import Path
import os

# Get absolute paths
BASE_DIR = Path(__file__).resolve().parent.parent.parent

class Settings(BaseSettings):
    # Database settings with sensible defaults
    DB_DIR: str = str(os.getenv("DB_DIR", str(BASE_DIR / "sqlite_db")))
    DB_FILENAME: str = os.getenv("DB_FILENAME", "shadow_it.db")

    # Computed from DB_DIR and DB_FILENAME unless set explicitly
    DATABASE_URL: Optional[str] = None

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Provider OAuth clients (used to refresh stored refresh tokens)
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    MICROSOFT_CLIENT_ID: str = os.getenv("MICROSOFT_CLIENT_ID", "")
    MICROSOFT_CLIENT_SECRET: str = os.getenv("MICROSOFT_CLIENT_SECRET", "")
    MICROSOFT_TOKEN_URL: str = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    MICROSOFT_TOKEN_SCOPE: str = "https://graph.microsoft.com/.default offline_access"

    # Organization-level run control
    ORG_DELAY_SECONDS: float = float(os.getenv("ORG_DELAY_SECONDS", "60"))
    ORG_MAX_RETRIES: int = int(os.getenv("ORG_MAX_RETRIES", "2"))
    ORG_RETRY_DELAY_SECONDS: float = float(os.getenv("ORG_RETRY_DELAY_SECONDS", "5"))

    # Provider API limits
    PROVIDER_CONCURRENCY_LIMIT: int = int(os.getenv("PROVIDER_CONCURRENCY_LIMIT", "1"))
    PROVIDER_CALL_DELAY_SECONDS: float = float(os.getenv("PROVIDER_CALL_DELAY_SECONDS", "0.1"))
    PAGE_MAX_RETRIES: int = int(os.getenv("PAGE_MAX_RETRIES", "3"))
    PAGE_RETRY_BASE_DELAY_SECONDS: float = float(os.getenv("PAGE_RETRY_BASE_DELAY_SECONDS", "1.0"))
    REQUEST_TIMEOUT_SECONDS: int = int(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    TOKEN_CACHE_TTL_SECONDS: float = float(os.getenv("TOKEN_CACHE_TTL_SECONDS", "300"))

    # Database batch mutation limits
    DB_BATCH_SIZE: int = int(os.getenv("DB_BATCH_SIZE", "50"))
    DB_BATCH_DELAY_SECONDS: float = float(os.getenv("DB_BATCH_DELAY_SECONDS", "0.2"))

    # Reconciliation policy
    STALE_RELATIONSHIP_POLICY: str = os.getenv("STALE_RELATIONSHIP_POLICY", "delete")
    BROAD_ASSIGNMENT_THRESHOLD: float = float(os.getenv("BROAD_ASSIGNMENT_THRESHOLD", "0.8"))
    BROAD_ASSIGNMENT_MIN_USERS: int = int(os.getenv("BROAD_ASSIGNMENT_MIN_USERS", "10"))

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        if not self.DATABASE_URL:
            db_path = Path(self.DB_DIR) / self.DB_FILENAME
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
            self.DATABASE_URL = f"sqlite+aiosqlite:///{db_path}"

        # Log the actual database location for debugging
        if self.LOG_LEVEL.upper() == "DEBUG":
            print(f"Database location: {self.DATABASE_URL}")

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = "allow"  # Allow extra fields

# Single instance for import
settings = Settings()
