import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        site_url: str,
        business_hours: tuple[int, int],
        daily_check_hour: int,
        monthly_report_hour: int,
        alert_dedupe_hours: int,
        reset_token_ttl_minutes: int,
        notification_retention_days: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.site_url = site_url
        self.business_hours = business_hours
        self.daily_check_hour = daily_check_hour
        self.monthly_report_hour = monthly_report_hour
        self.alert_dedupe_hours = alert_dedupe_hours
        self.reset_token_ttl_minutes = reset_token_ttl_minutes
        self.notification_retention_days = notification_retention_days


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("DOMUS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_hours(raw: str) -> tuple[int, int]:
    start_raw, end_raw = raw.split("-", 1)
    start, end = int(start_raw), int(end_raw)
    if not 0 <= start < end <= 24:
        raise ValueError(f"Invalid business hours range: {raw}")
    return start, end


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "domus.db"
    database_url = os.getenv("DOMUS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("DOMUS_TIMEZONE", "America/Sao_Paulo")
    secret_key = os.getenv(
        "DOMUS_SECRET_KEY",
        "5f0c8e3a9b1d47e6a2c4f8b0d3e6a9c1f4b7d0e3a6c9f2b5d8e1a4c7f0b3d6e9",
    )
    site_url = os.getenv("DOMUS_SITE_URL", "http://localhost:5173")
    business_hours = _parse_hours(os.getenv("DOMUS_BUSINESS_HOURS", "8-18"))
    daily_check_hour = int(os.getenv("DOMUS_DAILY_CHECK_HOUR", "9"))
    monthly_report_hour = int(os.getenv("DOMUS_MONTHLY_REPORT_HOUR", "18"))
    alert_dedupe_hours = int(os.getenv("DOMUS_ALERT_DEDUPE_HOURS", "24"))
    reset_token_ttl_minutes = int(os.getenv("DOMUS_RESET_TOKEN_TTL_MINUTES", "60"))
    notification_retention_days = int(
        os.getenv("DOMUS_NOTIFICATION_RETENTION_DAYS", "90")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        site_url=site_url.rstrip("/"),
        business_hours=business_hours,
        daily_check_hour=daily_check_hour,
        monthly_report_hour=monthly_report_hour,
        alert_dedupe_hours=alert_dedupe_hours,
        reset_token_ttl_minutes=reset_token_ttl_minutes,
        notification_retention_days=notification_retention_days,
    )
