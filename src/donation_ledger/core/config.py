from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):

    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    TOKEN_SIGNING_SECRET: str
    CANCELLATION_TOKEN_TTL_SECONDS: int = 60 * 60 * 24 * 7
    TOKEN_REVOCATION_ENABLED: bool = False
    SITE_URL: str = "http://localhost:3000"

    AWS_REGION: str
    AWS_PROFILE: str | None = None
    DYNAMODB_TABLE_NAME: str
    NOTIFICATION_QUEUE_URL: str
    RECEIPTS_BUCKET: str
    SES_FROM_EMAIL: str

    # Upper bounds for a single outbound call
    PROCESSOR_TIMEOUT_SECONDS: int = 10
    DATASTORE_TIMEOUT_SECONDS: int = 5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

@lru_cache()
def get_settings() -> Settings:
    return Settings()
