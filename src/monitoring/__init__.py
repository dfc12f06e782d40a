"""
Monitoring and metrics infrastructure for RaceSteward.

This package provides:
- Application metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and token redaction
- Request timing middleware for the HTTP API

Usage:
    from monitoring import metrics, get_logger

    # Record a metric
    metrics.increment("lifecycle_transitions_total", labels={"from": "pending", "to": "under_review"})

    # Get a logger
    logger = get_logger("sweeper")
    logger.info("Sweep finished", extra={"events_checked": 3})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging, timed

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_logging",
    "get_logger",
    "metrics",
    "setup_request_logging",
    "timed",
]
