from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./planwise.db"

    # JWT
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24

    # App Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Planwise Billing"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Cache / Redis
    REDIS_URL: Optional[str] = None
    REDIS_PASSWORD: Optional[str] = None
    CACHE_TTL_SECONDS: int = 300

    # Razorpay
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    # Verify/cancel calls that exceed this are treated as gateway errors
    RAZORPAY_TIMEOUT_SECONDS: float = 15.0

    # Subscription lifecycle
    GRACE_PERIOD_DAYS: int = 7
    RENEWAL_WINDOW_HOURS: int = 24
    SUBSCRIPTION_CYCLE_INTERVAL_MINUTES: int = 60
    # Tries per side effect (notification, analytics, remote cancel) after commit
    EFFECT_MAX_ATTEMPTS: int = 2

    # Email / SMTP Configuration
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 465
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM_EMAIL: Optional[str] = None
    SMTP_FROM_NAME: str = "Planwise"
    FRONTEND_URL: str = "http://localhost:5173"

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    @model_validator(mode='after')
    def assemble_redis_url(self) -> 'Settings':
        if self.REDIS_PASSWORD and self.REDIS_URL:
            # URL already carries credentials
            if "@" in self.REDIS_URL:
                return self

            import urllib.parse
            if "redis://" in self.REDIS_URL:
                encoded_pwd = urllib.parse.quote_plus(self.REDIS_PASSWORD)
                # redis://:PASSWORD@HOST:PORT/DB
                self.REDIS_URL = self.REDIS_URL.replace("redis://", f"redis://:{encoded_pwd}@", 1)
        return self

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
