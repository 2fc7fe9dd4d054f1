import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))
    seed_database: bool = _flag("SEED_DATABASE", "False")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@library.com")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "admin123")

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    token_expiration_minutes: int = int(os.getenv("TOKEN_EXPIRATION_MINUTES", "10080"))  # 7 days

    # Rate limiting for /api, per client IP
    rate_limit_enabled: bool = _flag("RATE_LIMIT_ENABLED", "True")
    rate_limit_max_requests: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900"))  # 15 minutes

    # Lending rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    member_borrow_limit: int = int(os.getenv("MEMBER_BORROW_LIMIT", "5"))
    admin_borrow_limit: int = int(os.getenv("ADMIN_BORROW_LIMIT", "10"))
    lending_max_retries: int = int(os.getenv("LENDING_MAX_RETRIES", "3"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Management API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _flag("DEBUG", "False")


settings = Settings()
