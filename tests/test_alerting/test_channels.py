"""
Tests for Alert Channels.

Covers:
- WhatsApp number formatting
- Simulated channel
- Twilio channel over a mocked transport (success, 4xx, 5xx, non-JSON bodies, network error)
- Circuit breaker short-circuits a failing Twilio API
- Channel selection from settings
"""

from urllib.parse import parse_qs

import httpx
import pytest

from agroalert.alerting.channels import (
    DeliveryStatus,
    SimulatedChannel,
    TwilioConfig,
    TwilioWhatsAppChannel,
    build_channel,
    format_whatsapp_number,
)
from agroalert.config import Settings
from agroalert.services.resilience import CircuitBreaker


CONFIG = TwilioConfig(
    account_sid="AC123",
    auth_token="secret",
    whatsapp_number="+14155238886",
    timeout_seconds=5.0,
)


def _make_channel(handler, breaker=None, config=CONFIG) -> TwilioWhatsAppChannel:
    return TwilioWhatsAppChannel(config, transport=httpx.MockTransport(handler), breaker=breaker)


# ── Formatting ────────────────────────────────────────────────────────


class TestFormatting:
    @pytest.mark.parametrize("raw", [
        "+55 11 99999-0000",
        "5511999990000",
        "whatsapp:+5511999990000",
        "(55) 11 99999 0000",
    ])
    def test_normalised(self, raw):
        assert format_whatsapp_number(raw) == "whatsapp:+5511999990000"


# ── Simulated ─────────────────────────────────────────────────────────


class TestSimulatedChannel:
    @pytest.mark.asyncio
    async def test_send_succeeds_without_network(self):
        result = await SimulatedChannel().send("+5511999990000", "[LOW] test")
        assert result.success is True
        assert result.simulated is True
        assert result.status == DeliveryStatus.SIMULATED
        assert result.message_sid.startswith("SIM-")


# ── Twilio ────────────────────────────────────────────────────────────


class TestTwilioChannel:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["form"] = parse_qs(request.content.decode())
            seen["auth"] = request.headers.get("authorization", "")
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        channel = _make_channel(handler)
        result = await channel.send("+55 11 99999-0000", "[HIGH] Frost risk (tomorrow)")
        await channel.close()

        assert result.success is True
        assert result.message_sid == "SM42"
        assert result.status == DeliveryStatus.QUEUED
        assert seen["path"] == "/2010-04-01/Accounts/AC123/Messages.json"
        assert seen["form"]["To"] == ["whatsapp:+5511999990000"]
        assert seen["form"]["From"] == ["whatsapp:+14155238886"]
        assert seen["form"]["Body"] == ["[HIGH] Frost risk (tomorrow)"]
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_rejected_request(self):
        def handler(request):
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        result = await _make_channel(handler).send("+5511999990000", "hi")
        assert result.success is False
        assert result.status == DeliveryStatus.FAILED
        assert result.error_code == "21211"
        assert "Invalid" in result.error_message

    @pytest.mark.asyncio
    async def test_server_error(self):
        def handler(request):
            return httpx.Response(503, json={"message": "Service Unavailable"})

        result = await _make_channel(handler).send("+5511999990000", "hi")
        assert result.success is False
        assert result.error_code == "503"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(403, text="<html>Forbidden</html>")

        result = await _make_channel(handler).send("+5511999990000", "hi")
        assert result.success is False
        assert result.error_code == "403"
        assert result.error_message == "Forbidden"

    @pytest.mark.asyncio
    async def test_non_json_success_body(self):
        def handler(request):
            return httpx.Response(201, text="created")

        result = await _make_channel(handler).send("+5511999990000", "hi")
        assert result.success is True
        assert result.message_sid is None
        assert result.status == DeliveryStatus.QUEUED

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await _make_channel(handler).send("+5511999990000", "hi")
        assert result.success is False
        assert result.error_code == "HTTP_ERROR"

    @pytest.mark.asyncio
    async def test_circuit_opens_after_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"message": "boom"})

        channel = _make_channel(handler, breaker=CircuitBreaker("twilio_test", failure_threshold=2))
        await channel.send("+5511999990000", "1")
        await channel.send("+5511999990000", "2")
        result = await channel.send("+5511999990000", "3")

        assert len(calls) == 2
        assert result.success is False
        assert result.error_code == "E2002"

    @pytest.mark.asyncio
    async def test_not_configured(self):
        def handler(request):
            raise AssertionError("must not call the API")

        channel = _make_channel(handler, config=TwilioConfig())
        result = await channel.send("+5511999990000", "hi")
        assert result.success is False
        assert result.error_code == "NOT_CONFIGURED"


# ── Selection ─────────────────────────────────────────────────────────


class TestBuildChannel:
    def test_simulated_without_credentials(self):
        cfg = Settings(twilio_account_sid="", twilio_auth_token="", twilio_whatsapp_number="")
        assert isinstance(build_channel(cfg), SimulatedChannel)

    def test_twilio_with_credentials(self):
        cfg = Settings(
            twilio_account_sid="AC123",
            twilio_auth_token="secret",
            twilio_whatsapp_number="+14155238886",
        )
        channel = build_channel(cfg)
        assert isinstance(channel, TwilioWhatsAppChannel)
        assert channel.is_configured
