"""Alert rule evaluation and notification throttling."""

from .evaluator import AlertEvaluator, RuleDecision
from .throttle import (
    AlertThrottle,
    InMemoryThrottleStore,
    SqliteThrottleStore,
    ThrottleStore,
    build_throttle_store,
)

__all__ = [
    "AlertEvaluator",
    "AlertThrottle",
    "InMemoryThrottleStore",
    "RuleDecision",
    "SqliteThrottleStore",
    "ThrottleStore",
    "build_throttle_store",
]
