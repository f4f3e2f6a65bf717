"""Aggregated resilience health for operators."""

from gateway.logging_config import get_logger
from gateway.services.circuit_breaker import CircuitState

logger = get_logger("health_service")


def get_system_health(container) -> dict:
    """Snapshot of every resilience component.

    ``status`` is ``degraded`` while a breaker is not closed or a message
    waits for operator action, otherwise ``healthy``.
    """
    breakers = container.breakers.states()
    retry_status = container.retry_queue.status()
    issues = []

    for breaker in breakers:
        if breaker["state"] != CircuitState.CLOSED.value:
            issues.append(f"circuit {breaker['name']} is {breaker['state']}")
    if retry_status["failed_permanent"]:
        issues.append(f"{retry_status['failed_permanent']} message(s) failed permanently")

    if issues:
        logger.warning("System degraded", extra={"context": {"issues": issues}})

    return {
        "status": "degraded" if issues else "healthy",
        "issues": issues,
        "rate_limit": container.rate_limiter.stats(),
        "circuit_breakers": breakers,
        "retry_queue": retry_status,
        "cache": container.cache.stats(),
        "batcher": container.batcher.stats(),
        "conversations": container.tracker.stats(),
        "background_tasks": [task.to_dict() for task in container.tasks],
    }
