import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        identity_secret: str,
        banking_api_url: str,
        banking_timeout_secs: float,
        banking_max_retries: int,
        banking_backoff_secs: float,
        budget_alert_threshold: float,
        summary_interval_hours: float,
        summary_user_timeout_secs: float,
        summary_workers: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.identity_secret = identity_secret
        self.banking_api_url = banking_api_url
        self.banking_timeout_secs = banking_timeout_secs
        self.banking_max_retries = banking_max_retries
        self.banking_backoff_secs = banking_backoff_secs
        self.budget_alert_threshold = budget_alert_threshold
        self.summary_interval_hours = summary_interval_hours
        self.summary_user_timeout_secs = summary_user_timeout_secs
        self.summary_workers = summary_workers
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    identity_secret = os.getenv(
        "LEDGER_IDENTITY_SECRET",
        "5f0c1d2b9e8a4c7d3b6a1f0e9d8c7b6a5f4e3d2c1b0a99887766554433221100",
    )
    banking_api_url = os.getenv(
        "LEDGER_BANKING_API_URL", "https://mockbankingapi.com"
    ).rstrip("/")
    banking_timeout_secs = float(os.getenv("LEDGER_BANKING_TIMEOUT_SECS", "10"))
    banking_max_retries = int(os.getenv("LEDGER_BANKING_MAX_RETRIES", "2"))
    banking_backoff_secs = float(os.getenv("LEDGER_BANKING_BACKOFF_SECS", "0.5"))
    budget_alert_threshold = float(os.getenv("LEDGER_BUDGET_ALERT_THRESHOLD", "0.8"))
    summary_interval_hours = float(os.getenv("LEDGER_SUMMARY_INTERVAL_HOURS", "24"))
    summary_user_timeout_secs = float(
        os.getenv("LEDGER_SUMMARY_USER_TIMEOUT_SECS", "30")
    )
    summary_workers = int(os.getenv("LEDGER_SUMMARY_WORKERS", "4"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        identity_secret=identity_secret,
        banking_api_url=banking_api_url,
        banking_timeout_secs=banking_timeout_secs,
        banking_max_retries=banking_max_retries,
        banking_backoff_secs=banking_backoff_secs,
        budget_alert_threshold=budget_alert_threshold,
        summary_interval_hours=summary_interval_hours,
        summary_user_timeout_secs=summary_user_timeout_secs,
        summary_workers=summary_workers,
        log_level=log_level,
    )
