import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "circulation.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "30"))

    # Circulation rules
    daily_fine_rate: Decimal = Decimal(os.getenv("DAILY_FINE_RATE", "0.50"))
    default_loan_period_days: int = int(os.getenv("DEFAULT_LOAN_PERIOD_DAYS", "14"))
    max_loan_period_days: int = int(os.getenv("MAX_LOAN_PERIOD_DAYS", "90"))

    # Overdue sweep: run before reads and/or periodically (seconds, 0 = off)
    refresh_overdue_on_read: bool = _flag("REFRESH_OVERDUE_ON_READ", "False")
    overdue_sweep_interval: float = float(os.getenv("OVERDUE_SWEEP_INTERVAL", "0"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")


settings = Settings()
