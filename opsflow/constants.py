"""Shared constants for opsflow."""

BREAKER_OPEN_PREFIX = "circuit breaker open:"
DEAD_LETTER_PREFIX = "[dead-letter]"
INTERRUPTED_PREFIX = "[interrupted]"

DEFAULT_TICK_INTERVAL_SECONDS = 60.0
DEFAULT_MAX_CONCURRENT_RUNS = 5
DEFAULT_AUTO_APPROVE_MAX = 500.0
DEFAULT_ESCALATION_MINUTES = 60
DEFAULT_AI_CONFIDENCE_CUTOFF = 70.0

EVENTS_TOPIC = "opsflow.events"
