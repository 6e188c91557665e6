"""
OrderGuard — Unit tests: error mapping, notifications, Kafka, security, guard policy, blocklist entries
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import HTTPException

from orderguard.config import Settings, settings
from orderguard.models.models import BlockedAttempt
from orderguard.services import alerting
from orderguard.services.blocklist import normalize_entry
from orderguard.services.errors import (
    BlocklistError, DatabaseError, KafkaError,
    NotificationError, ScoringError, ValidationError, exception_to_response,
)
from orderguard.services.guard import GuardMessages, GuardPolicy, _format
from orderguard.services.kafka_producer import KafkaProducer
from orderguard.services.observability import StructuredLogFormatter, set_request_id
from orderguard.services.security import (
    create_access_token, create_token_pair, get_current_admin, hash_password, verify_password, verify_token,
)


def _body(response):
    return json.loads(response.body)


# ===========================================================================
# ── Unit: Error mapping ─────────────────────────────────────────────────────
# ===========================================================================

class TestErrorMapping:
    def test_blocklist_conflict_keeps_message(self):
        resp, level = exception_to_response(BlocklistError("phone 01712345678 is already blocked"), "req-1")
        assert resp.status_code == 409
        assert level == "warning"
        error = _body(resp)["error"]
        assert error["code"] == "BLOCKLIST_ERROR"
        assert error["message"] == "phone 01712345678 is already blocked"
        assert error["request_id"] == "req-1"

    @pytest.mark.parametrize("exc, status_code, code", [
        (ScoringError("x"), 500, "SCORING_ERROR"),
        (DatabaseError("x"), 500, "DATABASE_ERROR"),
        (KafkaError("x"), 503, "KAFKA_ERROR"),
        (NotificationError("x"), 502, "NOTIFICATION_ERROR"),
        (ValidationError("x"), 422, "VALIDATION_ERROR"),
    ])
    def test_domain_errors(self, exc, status_code, code):
        resp, _ = exception_to_response(exc)
        assert resp.status_code == status_code
        assert _body(resp)["error"]["code"] == code

    def test_unexpected_error_hides_details(self):
        resp, level = exception_to_response(RuntimeError("password=hunter2"))
        assert resp.status_code == 500
        assert level == "error"
        assert "hunter2" not in resp.body.decode()


# ===========================================================================
# ── Unit: Notifications ─────────────────────────────────────────────────────
# ===========================================================================

def _attempt(**kwargs):
    defaults = dict(
        id="attempt-1",
        type="phone_cooldown",
        phone="01712345678",
        name="Rahim Uddin",
        ip_address="103.4.145.10",
        detail="order from 01712345678 within cooldown",
        created_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    )
    defaults.update(kwargs)
    return BlockedAttempt(**defaults)


class TestMessageFormat:
    def test_format_message(self):
        message = alerting.format_message(alerting.blocked_attempt_to_dict(_attempt(ip_address=None)))
        lines = message.splitlines()
        assert lines[0] == "**🚫 Order blocked: Phone cooldown**"
        assert "Name: Rahim Uddin" in lines
        assert "Phone: 01712345678" in lines
        assert not any(line.startswith("IP:") for line in lines)
        assert lines[-1] == "Time: 2026-03-01T12:00:00+00:00"

    def test_unknown_type_label(self):
        message = alerting.format_message({"type": "something_new"})
        assert message == "**🚫 Order blocked: something_new**"


@pytest.mark.asyncio
class TestWebhook:
    async def test_delivered(self, monkeypatch):
        url = "https://discord.example/api/webhooks/1/abc"
        post = AsyncMock(return_value=httpx.Response(204, request=httpx.Request("POST", url)))
        monkeypatch.setattr(httpx.AsyncClient, "post", post)
        await alerting.send_webhook(url, "hello")
        assert post.await_args.kwargs["json"] == {"content": "hello"}

    async def test_failure_raises_notification_error(self, monkeypatch):
        monkeypatch.setattr(httpx.AsyncClient, "post", AsyncMock(side_effect=httpx.ConnectError("refused")))
        with pytest.raises(NotificationError):
            await alerting.send_webhook("https://discord.example/api/webhooks/1/abc", "hello")

    async def test_http_error_status_raises(self, monkeypatch):
        url = "https://discord.example/api/webhooks/1/abc"
        post = AsyncMock(return_value=httpx.Response(500, request=httpx.Request("POST", url)))
        monkeypatch.setattr(httpx.AsyncClient, "post", post)
        with pytest.raises(NotificationError):
            await alerting.send_webhook(url, "hello")

    async def test_dispatch_survives_every_channel_failing(self, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_ENABLED", True)
        monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", "https://discord.example/api/webhooks/1/abc")
        webhook = AsyncMock(side_effect=NotificationError("timeout"))
        monkeypatch.setattr(alerting, "send_webhook", webhook)
        producer = AsyncMock()
        producer.send = AsyncMock(side_effect=KafkaError("broker down"))

        await alerting.dispatch_blocked_attempt(_attempt(), producer)

        producer.send.assert_awaited_once()
        assert producer.send.await_args.kwargs["topic"] == settings.KAFKA_BLOCKED_TOPIC
        webhook.assert_awaited_once()

    async def test_dispatch_without_channels(self, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_ENABLED", False)
        webhook = AsyncMock()
        monkeypatch.setattr(alerting, "send_webhook", webhook)
        await alerting.dispatch_blocked_attempt(_attempt())
        webhook.assert_not_awaited()


class TestEmail:
    @pytest.fixture(autouse=True)
    def _smtp_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_EMAIL_TO", ["owner@shop.example", "ops@shop.example"])
        monkeypatch.setattr(settings, "NOTIFICATION_EMAIL_FROM", "guard@shop.example")
        monkeypatch.setattr(settings, "SMTP_USERNAME", "guard")
        monkeypatch.setattr(settings, "SMTP_STARTTLS", True)

    def test_format_email(self):
        message = alerting.format_email(alerting.blocked_attempt_to_dict(_attempt(user_agent="Mozilla/5.0")))
        assert message["Subject"] == f"[{settings.APP_NAME}] Order blocked: Phone cooldown"
        assert message["To"] == "owner@shop.example, ops@shop.example"
        body = message.get_content()
        assert "Phone: 01712345678" in body
        assert "User agent: Mozilla/5.0" in body
        assert "**" not in body

    @pytest.mark.asyncio
    async def test_delivered(self, monkeypatch):
        smtp_cls = MagicMock()
        monkeypatch.setattr(alerting.smtplib, "SMTP", smtp_cls)
        message = alerting.format_email(alerting.blocked_attempt_to_dict(_attempt()))

        await alerting.send_email(message)

        smtp = smtp_cls.return_value.__enter__.return_value
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("guard", settings.SMTP_PASSWORD)
        smtp.send_message.assert_called_once_with(message)

    @pytest.mark.asyncio
    async def test_connection_failure_raises_notification_error(self, monkeypatch):
        monkeypatch.setattr(alerting.smtplib, "SMTP", MagicMock(side_effect=ConnectionRefusedError("refused")))
        with pytest.raises(NotificationError):
            await alerting.send_email(alerting.format_email({"type": "ip_cooldown"}))

    @pytest.mark.asyncio
    async def test_dispatch_sends_email_when_enabled(self, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_ENABLED", False)
        monkeypatch.setattr(settings, "NOTIFICATION_EMAIL_ENABLED", True)
        send = AsyncMock(side_effect=NotificationError("smtp down"))
        monkeypatch.setattr(alerting, "send_email", send)

        await alerting.dispatch_blocked_attempt(_attempt())

        send.assert_awaited_once()
        assert "Phone cooldown" in send.await_args.args[0]["Subject"]


@pytest.mark.asyncio
class TestKafkaProducer:
    async def test_send_before_start(self):
        producer = KafkaProducer("localhost:9092")
        assert not producer.is_running
        with pytest.raises(KafkaError):
            await producer.send("og.test", {"a": 1})

    async def test_stop_without_start_is_noop(self):
        producer = KafkaProducer("localhost:9092")
        await producer.stop()
        assert not producer.is_running


# ===========================================================================
# ── Unit: Security ──────────────────────────────────────────────────────────
# ===========================================================================

class TestSecurity:
    def test_password_hashing(self):
        hashed = hash_password("s3cret")
        assert hashed != "s3cret"
        assert verify_password("s3cret", hashed)
        assert not verify_password("wrong", hashed)

    def test_unrecognised_hash_never_verifies(self):
        assert not verify_password("s3cret", "s3cret")

    def test_token_pair_claims(self):
        tokens = create_token_pair("owner", scopes=["checkout", "admin"])
        access = verify_token(tokens["access_token"])
        refresh = verify_token(tokens["refresh_token"])
        assert access["sub"] == "owner"
        assert access["type"] == "access"
        assert refresh["type"] == "refresh"
        assert refresh["scopes"] == ["checkout", "admin"]

    def test_expired_token(self):
        token = create_access_token({"sub": "owner"}, expires_delta=timedelta(seconds=-10))
        with pytest.raises(HTTPException) as exc_info:
            verify_token(token)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_scope_required(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_admin({"sub": "manager", "scopes": ["checkout"]})
        assert exc_info.value.status_code == 403
        assert await get_current_admin({"sub": "system", "scopes": ["*"]})


# ===========================================================================
# ── Unit: Structured logging ────────────────────────────────────────────────
# ===========================================================================

class TestStructuredLogging:
    def test_request_id_stamped(self):
        set_request_id("req-42")
        record = logging.LogRecord("orderguard.test", logging.INFO, __file__, 1, "Checkout evaluated", None, None)
        payload = json.loads(StructuredLogFormatter().format(record))
        assert payload["message"] == "Checkout evaluated"
        assert payload["request_id"] == "req-42"
        assert payload["logger"] == "orderguard.test"
        assert payload["service"] == settings.APP_NAME


# ===========================================================================
# ── Unit: Guard policy ──────────────────────────────────────────────────────
# ===========================================================================

class TestGuardPolicy:
    def test_from_settings(self):
        policy = GuardPolicy.from_settings(Settings(
            PHONE_COOLDOWN_MINUTES=120,
            IP_COOLDOWN_ENABLED=False,
            WHITELIST_ENABLED=True,
            WHITELISTED_IPS=["10.0.0.0/8"],
            WHITELISTED_PHONES=["01712345678"],
            NAME_SIMILARITY_ENABLED=True,
        ))
        assert policy.phone_cooldown == timedelta(hours=2)
        assert policy.ip_cooldown_enabled is False
        assert policy.allowlist.contains_ip("10.9.8.7")
        assert policy.scoring.name_similarity is True
        assert policy.messages.vpn == settings.VPN_BLOCK_MESSAGE

    def test_message_hours(self):
        assert _format("try again in %d hours", timedelta(minutes=90)) == "try again in 2 hours"
        assert _format("try again in %d hours", timedelta(minutes=10)) == "try again in 1 hours"
        assert _format(GuardMessages().address_limit, timedelta(hours=5)) == GuardMessages().address_limit


# ===========================================================================
# ── Unit: Blocklist entries ─────────────────────────────────────────────────
# ===========================================================================

class TestBlocklistEntries:
    def test_phone_canonical(self):
        assert normalize_entry("phone", "+880 ১৭১২-৩৪৫৬৭৮") == "01712345678"

    def test_ip_canonical(self):
        assert normalize_entry("ip", " 2001:DB8:0:0::1 ") == "2001:db8::1"
        assert normalize_entry("ip", "203.0.113.9") == "203.0.113.9"

    def test_malformed_ip_rejected(self):
        with pytest.raises(ValidationError):
            normalize_entry("ip", "203.0.113")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            normalize_entry("email", "a@b.c")

    def test_device_kept_verbatim(self):
        assert normalize_entry("device", " fp-ABC ") == "fp-ABC"
