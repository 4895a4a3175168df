"""Configuration management for the endpoint monitoring engine."""

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    """SQLite storage settings."""
    path: str = Field(default="data/endpoint-monitoring.db", description="SQLite database file")


class LoggingConfig(BaseModel):
    """structlog output settings."""
    level: str = Field(default="INFO", description="Logging level")
    json_output: bool = Field(default=False, description="Render log events as JSON lines")


class SchedulerConfig(BaseModel):
    """Periodic job settings."""
    enabled: bool = Field(default=False, description="Start the periodic jobs on boot")
    check_cron: str = Field(default="* * * * *", description="Cron expression for the active-check tick")
    cleanup_cron: str = Field(default="0 0 * * *", description="Cron expression for the retention cleanup")
    max_instances: int = Field(default=3, description="Concurrent copies of one tick allowed to overlap")
    coalesce: bool = Field(default=False, description="Collapse missed runs into one")


class ProbeConfig(BaseModel):
    """Outbound probe settings."""
    default_content_type: str = Field(default="application/json", description="Content-Type sent unless overridden")
    record_timeout_as_configured: bool = Field(
        default=True, description="Record TIMEOUT latency as the configured timeout instead of elapsed time"
    )
    adhoc_timeout_seconds: float = Field(default=30.0, description="Cap for ad-hoc requests")


class AlertsConfig(BaseModel):
    """Alert evaluation settings."""
    error_rate_scope: Literal["user", "organization", "endpoint"] = Field(
        default="user", description="Check population used by ERROR_RATE_ABOVE"
    )
    aggregate_window_hours: int = Field(default=24, description="Trailing window for uptime/error-rate conditions")
    record_suppressed_triggers: bool = Field(
        default=False, description="Persist a trigger row even when the notification is throttled"
    )
    notify_on_failure: bool = Field(
        default=False, description="Notify the organization on every non-SUCCESS check, throttled per endpoint"
    )
    throttle_store: Literal["memory", "sqlite"] = Field(
        default="memory", description="Where notification cooldowns live; sqlite shares them across processes"
    )


class NotificationsConfig(BaseModel):
    """Channel delivery settings."""
    send_timeout_seconds: float = Field(default=10.0, description="Upper bound for a single channel send")
    user_agent: str = Field(default="Endpoint-Monitor/1.0", description="User-Agent for webhook deliveries")


class EmailConfig(BaseModel):
    """SMTP settings for EMAIL channels."""
    host: Optional[str] = Field(default=None, description="SMTP host")
    port: int = Field(default=587, description="SMTP port; 465 means implicit TLS")
    username: Optional[str] = Field(default=None, description="SMTP username")
    password: Optional[str] = Field(default=None, description="SMTP password")
    sender: str = Field(default="alerts@localhost", description="From address")
    dashboard_url: str = Field(default="http://localhost:3000", description="Base URL linked from alert emails")

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)


class RetentionConfig(BaseModel):
    """Check history retention."""
    per_plan: bool = Field(default=True, description="Use each organization's plan retention window")
    default_days: int = Field(default=30, description="Retention for organizations without a plan, or globally")


class MonitoringConfig(BaseModel):
    """Main configuration for the endpoint monitoring engine."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)


def _set_nested(data: dict, section: str, key: str, value) -> None:
    data.setdefault(section, {})
    if not isinstance(data[section], dict):
        data[section] = {}
    data[section][key] = value


def load_config(config_path: Optional[str] = None) -> MonitoringConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("ENDPOINT_MONITOR_CONFIG", "config/endpoint-monitoring.yaml")

    config_data = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    env_overrides = {
        ("database", "path"): os.getenv("ENDPOINT_MONITOR_DB_PATH"),
        ("logging", "level"): os.getenv("LOG_LEVEL"),
        ("logging", "json_output"): os.getenv("LOG_FORMAT"),
        ("scheduler", "enabled"): os.getenv("ENABLE_CRON"),
        ("email", "host"): os.getenv("EMAIL_HOST"),
        ("email", "port"): os.getenv("EMAIL_PORT"),
        ("email", "username"): os.getenv("EMAIL_USER"),
        ("email", "password"): os.getenv("EMAIL_PASS"),
        ("email", "sender"): os.getenv("EMAIL_FROM"),
        ("email", "dashboard_url"): os.getenv("APP_URL"),
    }

    for (section, key), value in env_overrides.items():
        if value is None:
            continue
        if (section, key) == ("email", "port"):
            value = int(value)
        elif (section, key) == ("logging", "json_output"):
            value = value.strip().lower() == "json"
        elif (section, key) == ("scheduler", "enabled"):
            value = value.strip().lower() in ("true", "1", "yes")
        _set_nested(config_data, section, key, value)

    return MonitoringConfig(**config_data)


_config: Optional[MonitoringConfig] = None


def get_config() -> MonitoringConfig:
    """Get the process configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[MonitoringConfig]) -> None:
    """Replace (or with None, reset) the process configuration."""
    global _config
    _config = config
