import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    database_pool_size: int = int(os.getenv("DATABASE_POOL_SIZE", "5"))
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "10"))

    # Lending rules
    borrow_limit: int = int(os.getenv("BORROW_LIMIT", "5"))
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
