from __future__ import annotations

import structlog

from endpoint_monitoring.models import CheckResult, EndpointDefinition, ProbeOutcome
from endpoint_monitoring.storage import MonitoringStore


logger = structlog.get_logger(__name__)


class CheckRecorder:
    """Persists probe outcomes as immutable history rows."""

    def __init__(self, store: MonitoringStore) -> None:
        self.store = store

    def record(self, endpoint: EndpointDefinition, outcome: ProbeOutcome) -> CheckResult:
        # Errors propagate: a lost row ends this endpoint's cycle, the caller isolates it.
        result = self.store.insert_check_result(endpoint, outcome)
        logger.debug(
            "Check recorded",
            check_id=result.id,
            endpoint_id=endpoint.id,
            status=result.status.value,
            response_time_ms=result.response_time_ms,
        )
        return result
