"""
OrderGuard — Blocked-attempt notifications

Blocked attempts are already persisted by the checkout guard; this module
handles the *outbound* fan-out:
    • Structured log        (always)
    • Kafka blocked topic   (when a producer is running)
    • Webhook               (NOTIFICATION_ENABLED + NOTIFICATION_WEBHOOK_URL)
    • Email                 (NOTIFICATION_EMAIL_ENABLED + NOTIFICATION_EMAIL_TO)

The webhook body uses the Discord ``content`` field, which Slack-style
incoming webhooks ignore harmlessly.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional

import httpx

from orderguard.config import settings
from orderguard.models.models import BlockedAttempt
from orderguard.services.errors import NotificationError
from orderguard.services.observability import Metrics

logger = logging.getLogger("orderguard.alerts")

_TYPE_LABELS = {
    "phone_cooldown": "Phone cooldown",
    "ip_cooldown": "IP cooldown",
    "address_limit": "Address limit",
    "similar_name": "Similar name",
    "invalid_phone": "Invalid phone",
    "vpn_proxy": "VPN / proxy",
    "blocklist_phone": "Blocklisted phone",
    "blocklist_ip": "Blocklisted IP",
    "blocklist_device": "Blocklisted device",
}


# ===========================================================================
# Public entry-point
# ===========================================================================
async def dispatch_blocked_attempt(attempt: BlockedAttempt, kafka_producer=None):
    """
    Fan out *attempt* across all configured channels.  Never raises; a
    failed channel is logged and the others still run.

    Parameters
    ----------
    attempt        : the persisted BlockedAttempt row
    kafka_producer : the app.state.kafka_producer singleton (optional)
    """
    payload = blocked_attempt_to_dict(attempt)

    logger.warning(
        "BLOCKED [%s] phone=%s ip=%s %s",
        attempt.type, attempt.phone, attempt.ip_address, attempt.detail or "",
    )

    if kafka_producer:
        try:
            await kafka_producer.send(
                topic=settings.KAFKA_BLOCKED_TOPIC,
                value=payload,
                key=attempt.phone or attempt.ip_address,
            )
            Metrics.kafka_messages_sent_total.labels(topic=settings.KAFKA_BLOCKED_TOPIC).inc()
        except Exception as exc:
            logger.error("Kafka blocked-attempt send failed: %s", exc)
            Metrics.kafka_messages_errors_total.labels(topic=settings.KAFKA_BLOCKED_TOPIC).inc()

    if settings.NOTIFICATION_ENABLED and settings.NOTIFICATION_WEBHOOK_URL:
        try:
            await send_webhook(settings.NOTIFICATION_WEBHOOK_URL, format_message(payload))
            Metrics.notifications_total.labels(status="delivered").inc()
        except NotificationError as exc:
            logger.error("%s", exc)
            Metrics.notifications_total.labels(status="failed").inc()

    if settings.NOTIFICATION_EMAIL_ENABLED and settings.NOTIFICATION_EMAIL_TO:
        try:
            await send_email(format_email(payload))
            Metrics.notifications_total.labels(status="delivered").inc()
        except NotificationError as exc:
            logger.error("%s", exc)
            Metrics.notifications_total.labels(status="failed").inc()


# ===========================================================================
# Helpers
# ===========================================================================
def blocked_attempt_to_dict(attempt: BlockedAttempt) -> Dict[str, Any]:
    return {
        "id": attempt.id,
        "type": attempt.type,
        "phone": attempt.phone,
        "name": attempt.name,
        "ip": attempt.ip_address,
        "user_agent": attempt.user_agent,
        "detail": attempt.detail,
        "created_at": attempt.created_at.isoformat() if attempt.created_at else None,
    }


def format_message(payload: Dict[str, Any]) -> str:
    label = _TYPE_LABELS.get(payload.get("type"), payload.get("type") or "Blocked")
    lines = [f"**🚫 Order blocked: {label}**"]
    for key, title in (("name", "Name"), ("phone", "Phone"), ("ip", "IP"), ("detail", "Detail")):
        if payload.get(key):
            lines.append(f"{title}: {payload[key]}")
    if payload.get("created_at"):
        lines.append(f"Time: {payload['created_at']}")
    return "\n".join(lines)


async def send_webhook(url: str, content: str, timeout: Optional[float] = None):
    """POST ``{"content": ...}`` to *url*; raises NotificationError on failure."""
    try:
        async with httpx.AsyncClient(timeout=timeout or settings.NOTIFICATION_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json={"content": content[:2000]})
            resp.raise_for_status()
            logger.info("Webhook delivered (status %d)", resp.status_code)
    except httpx.HTTPError as exc:
        raise NotificationError(f"Webhook delivery failed: {exc}") from exc


def format_email(payload: Dict[str, Any]) -> EmailMessage:
    label = _TYPE_LABELS.get(payload.get("type"), payload.get("type") or "Blocked")
    message = EmailMessage()
    message["Subject"] = f"[{settings.APP_NAME}] Order blocked: {label}"
    message["From"] = settings.NOTIFICATION_EMAIL_FROM
    message["To"] = ", ".join(settings.NOTIFICATION_EMAIL_TO)
    body = format_message(payload).replace("**", "")
    if payload.get("user_agent"):
        body += f"\nUser agent: {payload['user_agent']}"
    message.set_content(body)
    return message


def _deliver_email(message: EmailMessage):
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.NOTIFICATION_TIMEOUT_SECONDS) as smtp:
        if settings.SMTP_STARTTLS:
            smtp.starttls()
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(message)


async def send_email(message: EmailMessage):
    """Deliver *message* over SMTP off the event loop; raises NotificationError on failure."""
    try:
        await asyncio.to_thread(_deliver_email, message)
        logger.info("Email delivered to %s", message["To"])
    except (smtplib.SMTPException, OSError) as exc:
        raise NotificationError(f"Email delivery failed: {exc}") from exc
