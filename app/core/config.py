from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Workflow rules
    max_expense_age_days: int = Field(365, alias="MAX_EXPENSE_AGE_DAYS")
    transition_max_retries: int = Field(3, alias="TRANSITION_MAX_RETRIES")

    default_page_size: int = Field(10, alias="DEFAULT_PAGE_SIZE")
    max_page_size: int = Field(100, alias="MAX_PAGE_SIZE")

    # Notifications: logged only when no webhook is configured
    notification_webhook_url: Optional[str] = Field(None, alias="NOTIFICATION_WEBHOOK_URL")
    notification_max_attempts: int = Field(3, alias="NOTIFICATION_MAX_ATTEMPTS")
    notification_queue_size: int = Field(1000, alias="NOTIFICATION_QUEUE_SIZE")
    notification_timeout_seconds: float = Field(5.0, alias="NOTIFICATION_TIMEOUT_SECONDS")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
