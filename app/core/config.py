from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Database
    DATABASE_URL: Optional[str] = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_USER: str = "mwm"
    DB_PASSWORD: str = "mwm_password"
    DB_NAME: str = "mwm_newsletter"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Email
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    EMAIL_FROM: Optional[str] = None
    EMAIL_FROM_NAME: str = "MWM"

    # URLs
    CLIENT_URL: str = "http://localhost:3000"  # Public site, used in unsubscribe links
    BRAND_NAME: str = "MWM"

    # Admin API access (bearer token checked by the newsletter router)
    ADMIN_API_TOKEN: Optional[str] = None

    # Campaign dispatch
    CAMPAIGN_SEND_CONCURRENCY: int = 5  # 1 = strictly sequential
    CAMPAIGN_SEND_TIMEOUT_SECONDS: float = 30.0  # Per-recipient delivery timeout
    CAMPAIGN_SEND_MAX_ATTEMPTS: int = 3  # Attempts per recipient on transient errors
    CAMPAIGN_RETRY_BASE_DELAY: float = 0.5
    CAMPAIGN_RETRY_MAX_DELAY: float = 8.0
    SCHEDULED_CAMPAIGN_POLL_SECONDS: int = 60

    class Config:
        env_file = ".env"
        extra = "ignore"  # Allow extra fields in .env file

settings = Settings()
