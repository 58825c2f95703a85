"""
Structured logging normalization.

Single contract for critical lifecycle logs (purchase, activation, checkout, webhook):
- component
- operation
- correlation_id (optional)
- outcome
- duration_ms (optional, omitted if None)
- reason (optional)

Do not log secrets, bearer tokens or full gateway payloads.
"""
import time
from contextlib import contextmanager
from logging import Logger
from typing import Optional


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    correlation_id: Optional[str] = None,
    outcome: str,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
    **fields,
) -> None:
    """
    Emit structured log event.

    Args:
        logger: Logger instance
        component: Component name (e.g., "provisioning", "settlement", "http")
        operation: Operation name (e.g., "purchase", "handle_webhook")
        correlation_id: Request identifier (optional)
        outcome: Outcome (e.g., "success", "rejected", "failed")
        duration_ms: Duration in milliseconds (omitted if None)
        reason: Short non-PII explanation (optional)
        level: Log level ("info", "warning", "error", "critical", "debug")
        message: Optional override message (defaults to "component operation outcome=...")
        **fields: Extra structured fields (user_id, plan_id, order_id, ...)
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
    if reason is not None:
        extra["reason"] = reason
    for key, value in fields.items():
        if value is not None:
            extra[key] = value

    msg = message or f"{component} {operation} outcome={outcome}"
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)


@contextmanager
def elapsed_ms():
    """Yield a callable returning milliseconds since entering the block."""
    start = time.monotonic()
    yield lambda: int((time.monotonic() - start) * 1000)
