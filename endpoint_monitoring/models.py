from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CheckStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


class AlertCondition(str, Enum):
    RESPONSE_TIME_ABOVE = "RESPONSE_TIME_ABOVE"
    RESPONSE_TIME_BELOW = "RESPONSE_TIME_BELOW"
    STATUS_CODE_NOT = "STATUS_CODE_NOT"
    UPTIME_BELOW = "UPTIME_BELOW"
    ERROR_RATE_ABOVE = "ERROR_RATE_ABOVE"


class ChannelType(str, Enum):
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"
    SLACK = "SLACK"
    DISCORD = "DISCORD"


class PlanType(str, Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


@dataclass(frozen=True)
class EndpointDefinition:
    id: str
    organization_id: str | None
    user_id: str
    name: str
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    expected_status: int = 200
    # Both in milliseconds.
    timeout_ms: int = 30_000
    interval_ms: int = 300_000
    is_active: bool = True


@dataclass(frozen=True)
class ProbeOutcome:
    """Classification of one probe before it is persisted."""

    status: CheckStatus
    response_time_ms: float | None = None
    status_code: int | None = None
    response_size: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CheckResult:
    id: str
    endpoint_id: str
    user_id: str
    organization_id: str | None
    status: CheckStatus
    response_time_ms: float | None
    status_code: int | None
    response_size: int | None
    error_message: str | None
    checked_at_ts: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "endpointId": self.endpoint_id,
            "status": self.status.value,
            "responseTime": self.response_time_ms,
            "statusCode": self.status_code,
            "responseSize": self.response_size,
            "errorMessage": self.error_message,
            "checkedAt": self.checked_at_ts,
        }


@dataclass(frozen=True)
class AlertRule:
    id: str
    endpoint_id: str
    user_id: str
    name: str
    condition: str
    threshold: float
    description: str | None = None
    is_active: bool = True
    last_triggered_ts: float | None = None


@dataclass(frozen=True)
class AlertTrigger:
    id: str
    alert_id: str
    value: float
    triggered_at_ts: float

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "alertId": self.alert_id, "value": self.value, "triggeredAt": self.triggered_at_ts}


@dataclass(frozen=True)
class NotificationChannel:
    id: str
    organization_id: str
    name: str
    type: str
    # Serialized JSON; parsed into a typed config only at send/validation time.
    config: str
    is_active: bool = True


@dataclass(frozen=True)
class AlertEvaluationContext:
    endpoint_id: str
    status: CheckStatus
    response_time_ms: float | None = None
    status_code: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class UptimeStats:
    total: int
    successful: int
    failed: int
    uptime_percentage: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "uptimePercentage": self.uptime_percentage,
        }


@dataclass(frozen=True)
class OverallStats:
    total_checks: int
    successful_checks: int
    failed_checks: int
    error_rate: float
    uptime_percentage: float
    avg_response_time: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalChecks": self.total_checks,
            "successfulChecks": self.successful_checks,
            "failedChecks": self.failed_checks,
            "errorRate": self.error_rate,
            "uptimePercentage": self.uptime_percentage,
            "avgResponseTime": self.avg_response_time,
        }
