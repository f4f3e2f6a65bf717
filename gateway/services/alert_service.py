"""Operator alerts sent to a Telegram chat.

Alerts raised from inside the event loop are sent in the background
(``dispatch_alert``); ``flush_alerts`` waits for the ones still in flight.
"""

import asyncio
from typing import Optional

import httpx

from gateway.config import settings
from gateway.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token
ALERT_CHAT_ID = settings.alert_chat_id
ALERT_TIMEOUT_SECONDS = 10

LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

_pending_alerts: set[asyncio.Task] = set()


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_EMOJI.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


def _alerts_configured(level: str, message: str) -> bool:
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(
            "Alert not configured",
            extra={"context": {"level": level, "alert": message}},
        )
        return False
    return True


def _telegram_request(level: str, message: str, context: Optional[dict]) -> tuple[str, dict]:
    url = f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage"
    payload = {
        "chat_id": ALERT_CHAT_ID,
        "text": format_alert(level, message, context),
        "parse_mode": "Markdown",
    }
    return url, payload


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Blocks until Telegram answers; use ``dispatch_alert`` from async code.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    if not _alerts_configured(level, message):
        return False

    url, payload = _telegram_request(level, message, context)
    try:
        with httpx.Client(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = client.post(url, json=payload)
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def send_alert_async(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Same as ``send_alert`` on ``httpx.AsyncClient``."""
    if not _alerts_configured(level, message):
        return False

    url, payload = _telegram_request(level, message, context)
    try:
        async with httpx.AsyncClient(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json=payload)
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def _alert_done(task: asyncio.Task) -> None:
    _pending_alerts.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background alert failed", extra={"context": {"error": f"{type(exc).__name__}: {exc}"}})


def dispatch_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send an alert without blocking the caller.

    Inside a running event loop the alert is scheduled as a task and the
    return value only says whether it was scheduled. Outside a loop this is
    ``send_alert``.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return send_alert(level, message, context)

    if not _alerts_configured(level, message):
        return False
    task = loop.create_task(send_alert_async(level, message, context))
    _pending_alerts.add(task)
    task.add_done_callback(_alert_done)
    return True


async def flush_alerts() -> None:
    """Wait for background alerts still in flight."""
    if _pending_alerts:
        await asyncio.gather(*list(_pending_alerts), return_exceptions=True)


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return dispatch_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return dispatch_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for WARNING level alert."""
    return dispatch_alert("WARNING", message, context)


def alert_circuit_open(breaker_state: dict) -> bool:
    """Dependency breaker tripped; calls are short-circuited to the fallback."""
    return alert_critical(
        f"Circuit breaker opened: {breaker_state.get('name')}",
        {
            "counters": breaker_state.get("counters"),
            "error_percentage": breaker_state.get("error_percentage"),
            "next_attempt_at": breaker_state.get("next_attempt_at"),
        },
    )
