from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class CleanupConfig(BaseModel):
    """Retention sweep over logs / reports / screenshots."""

    enabled: bool = True
    retention_days: int = 180
    delete_empty_logs: bool = True
    max_log_size_mb: float = 100
    run_on_startup: bool = True
    delete_empty_dirs: bool = False


class MonitoringConfig(BaseModel):
    stop_on_critical_failure: bool = True
    check_interval_hours: float = 3
    timeout_seconds: int = 30
    # Runs allowed to drive checks at the same time (each owns a browser session)
    max_concurrent_runs: int = 1
    # False = one incident per failing critical check per run (historical behaviour)
    dedupe_incidents: bool = False
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)


class PathsConfig(BaseModel):
    """Artifact directories, relative paths resolve against the CWD."""

    logs: Path = Path("logs")
    reports: Path = Path("reports")
    screenshots: Path = Path("screenshots")
    data: Path = Path("data")


class AlertsConfig(BaseModel):
    send_on_failure: bool = True
    send_on_success: bool = False
    recipients: list[str] = Field(default_factory=list)


class SmtpConfig(BaseModel):
    host: str = ""
    port: int = 587
    use_tls: bool = True
    user: str = ""
    password: str = ""


class DashboardConfig(BaseModel):
    # Single shared credential pair for the dashboard API
    auth_enabled: bool = False
    username: str = "admin"
    password: str = ""


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }

    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)

    # Storage
    database_path: Path = Path("data") / "monitoring.db"

    # Target sites (YAML catalogue consumed by the built-in checks)
    sites_file: Path = Path("sites.yaml")

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # Logging
    log_level: str = "INFO"

    # Notifications (Slack / Telegram, optional)
    slack_webhook_url: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""


settings = Settings()
