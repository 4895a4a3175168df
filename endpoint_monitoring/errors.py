"""Exception hierarchy for configuration-time and lookup failures.

Runtime failures inside the check pipeline (probe errors, per-rule and
per-channel errors) are converted to outcomes or logged; the classes here are
what callers of the configuration layer and the outbound API see.
"""

from __future__ import annotations


class MonitoringError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class BadRequestError(MonitoringError):
    status_code = 400
    code = "BAD_REQUEST"


class ForbiddenError(MonitoringError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "You don't have permission to access this resource") -> None:
        super().__init__(message)


class NotFoundError(MonitoringError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class PlanLimitError(MonitoringError):
    status_code = 429
    code = "TOO_MANY_REQUESTS"


class RateLimitError(MonitoringError):
    status_code = 429
    code = "TOO_MANY_REQUESTS"

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ChannelConfigError(BadRequestError):
    """Stored or submitted channel configuration is not usable."""
