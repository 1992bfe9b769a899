import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        flat_threshold_pct: float,
        max_insights: int,
        max_recommendations: int,
        insights_window_months: int,
        category_thresholds: dict[str, int],
        alert_income_ratio: float,
        suppress_duplicate_alerts: bool,
        scheduler_enabled: bool,
        report_workers: int,
        send_interval_secs: float,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
        mail_sender: str,
        frontend_url: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.flat_threshold_pct = flat_threshold_pct
        self.max_insights = max_insights
        self.max_recommendations = max_recommendations
        self.insights_window_months = insights_window_months
        self.category_thresholds = category_thresholds
        self.alert_income_ratio = alert_income_ratio
        self.suppress_duplicate_alerts = suppress_duplicate_alerts
        self.scheduler_enabled = scheduler_enabled
        self.report_workers = report_workers
        self.send_interval_secs = send_interval_secs
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.mail_sender = mail_sender
        self.frontend_url = frontend_url


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONETASIS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < 1:
        raise ValueError(f"{name} must be at least 1")
    return value


def _category_thresholds() -> dict[str, int]:
    raw = os.getenv("MONETASIS_CATEGORY_THRESHOLDS")
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("MONETASIS_CATEGORY_THRESHOLDS must be a JSON object") from exc
    if not isinstance(data, dict):
        raise ValueError("MONETASIS_CATEGORY_THRESHOLDS must be a JSON object")
    # values are in cents
    return {str(tag).lower(): int(cents) for tag, cents in data.items()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "monetasis.db"
    database_url = os.getenv("MONETASIS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONETASIS_TIMEZONE", "America/Sao_Paulo")
    token_secret = os.getenv(
        "MONETASIS_TOKEN_SECRET",
        "3f9c1d2ab7e4405e8f61c0a9d5b27e44c8a1f03b9d6e2c7a4b5f8e1d0c3a6b92",
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=int(os.getenv("MONETASIS_TOKEN_MAX_AGE_HOURS", "168")),
        flat_threshold_pct=float(os.getenv("MONETASIS_FLAT_THRESHOLD_PCT", "1.0")),
        max_insights=_positive_int("MONETASIS_MAX_INSIGHTS", 8),
        max_recommendations=_positive_int("MONETASIS_MAX_RECOMMENDATIONS", 5),
        insights_window_months=_positive_int("MONETASIS_INSIGHTS_WINDOW_MONTHS", 3),
        category_thresholds=_category_thresholds(),
        alert_income_ratio=float(os.getenv("MONETASIS_ALERT_INCOME_RATIO", "0.3")),
        suppress_duplicate_alerts=_env_bool(
            "MONETASIS_SUPPRESS_DUPLICATE_ALERTS", True
        ),
        scheduler_enabled=_env_bool("MONETASIS_SCHEDULER_ENABLED", True),
        report_workers=_positive_int("MONETASIS_REPORT_WORKERS", 4),
        send_interval_secs=float(os.getenv("MONETASIS_SEND_INTERVAL_SECS", "2")),
        smtp_host=os.getenv("MONETASIS_SMTP_HOST") or None,
        smtp_port=int(os.getenv("MONETASIS_SMTP_PORT", "587")),
        smtp_username=os.getenv("MONETASIS_SMTP_USERNAME") or None,
        smtp_password=os.getenv("MONETASIS_SMTP_PASSWORD") or None,
        mail_sender=os.getenv("MONETASIS_MAIL_SENDER", "MonetaSis <no-reply@monetasis.app>"),
        frontend_url=os.getenv("MONETASIS_FRONTEND_URL", "http://localhost:3000"),
    )
