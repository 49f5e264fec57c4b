"""
Alert Channels — deliver a rendered alert to a farmer's phone.

- TwilioWhatsAppChannel: POST to the Twilio Messages API over httpx
- SimulatedChannel: logs what would be sent and succeeds without network I/O

A channel never raises for delivery problems; it returns a SendResult and
the dispatcher decides whether to retry.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

from agroalert.config import Settings
from agroalert.exceptions import ChannelError, CircuitOpenError
from agroalert.services.resilience import CircuitBreaker

logger = structlog.get_logger(__name__)


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNDELIVERED = "undelivered"
    SIMULATED = "simulated"


class SendResult(BaseModel):
    """Result of sending a message."""

    success: bool
    message_sid: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.QUEUED
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    simulated: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationChannel(Protocol):
    """Protocol for outbound message channels."""

    name: str

    async def send(self, recipient: str, message: str) -> SendResult: ...

    async def close(self) -> None: ...


def format_whatsapp_number(phone: str) -> str:
    """Normalise a phone number to Twilio's `whatsapp:+<digits>` form."""
    phone = phone.strip()
    if phone.startswith("whatsapp:"):
        phone = phone[len("whatsapp:"):]
    phone = phone.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")
    if not phone.startswith("+"):
        phone = "+" + phone
    return f"whatsapp:{phone}"


# ── Twilio ─────────────────────────────────────────────────────────────


class TwilioConfig(BaseModel):
    account_sid: str = ""
    auth_token: str = ""
    whatsapp_number: str = ""
    timeout_seconds: float = 15.0

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.whatsapp_number)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TwilioConfig":
        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            whatsapp_number=settings.twilio_whatsapp_number,
            timeout_seconds=settings.channel_timeout_seconds,
        )


class TwilioWhatsAppChannel:
    """
    WhatsApp delivery through Twilio.

    Usage:
        channel = TwilioWhatsAppChannel(TwilioConfig.from_settings(settings))
        result = await channel.send("+5511999990000", "[HIGH] Frost risk ...")
        await channel.close()
    """

    name = "twilio_whatsapp"
    TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        config: TwilioConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._config = config
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._circuit_breaker = breaker or CircuitBreaker(
            name="twilio_api",
            failure_threshold=5,
            recovery_timeout=60.0,
        )

    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.TWILIO_API_BASE,
                timeout=httpx.Timeout(self._config.timeout_seconds),
                auth=(self._config.account_sid, self._config.auth_token),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, recipient: str, message: str) -> SendResult:
        if not self.is_configured:
            logger.warning("twilio_not_configured")
            return SendResult(
                success=False,
                status=DeliveryStatus.FAILED,
                error_code="NOT_CONFIGURED",
                error_message="Twilio credentials not configured",
            )

        to = format_whatsapp_number(recipient)
        try:
            return await self._circuit_breaker.call(self._post_message, to, message)
        except CircuitOpenError as e:
            return SendResult(
                success=False,
                status=DeliveryStatus.FAILED,
                error_code=e.error_code.value,
                error_message=e.message,
            )
        except ChannelError as e:
            return SendResult(
                success=False,
                status=DeliveryStatus.FAILED,
                error_code=str(e.details.get("status_code", e.error_code.value)),
                error_message=e.message,
            )
        except httpx.HTTPError as e:
            logger.warning("twilio_http_error", to=to, error=str(e))
            return SendResult(
                success=False,
                status=DeliveryStatus.FAILED,
                error_code="HTTP_ERROR",
                error_message=str(e) or type(e).__name__,
            )

    async def _post_message(self, to: str, body: str) -> SendResult:
        """
        POST one message. Server-side failures raise so the breaker counts
        them; rejected requests (4xx) are returned as a failed result.
        """
        response = await self._client().post(
            f"/Accounts/{self._config.account_sid}/Messages.json",
            data={
                "From": format_whatsapp_number(self._config.whatsapp_number),
                "To": to,
                "Body": body,
            },
        )

        if response.status_code >= 500:
            logger.warning("twilio_server_error", status=response.status_code)
            raise ChannelError(
                f"Twilio returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.warning("twilio_unexpected_body", status=response.status_code)
            data = {}

        if response.is_success:
            status = data.get("status", DeliveryStatus.QUEUED.value)
            logger.info("message_sent", message_sid=data.get("sid"), to=to, status=status)
            try:
                delivery = DeliveryStatus(status)
            except ValueError:
                delivery = DeliveryStatus.QUEUED
            return SendResult(success=True, message_sid=data.get("sid"), status=delivery)

        logger.warning(
            "message_send_failed",
            to=to,
            error_code=data.get("code"),
            error_message=data.get("message"),
        )
        return SendResult(
            success=False,
            status=DeliveryStatus.FAILED,
            error_code=str(data.get("code", response.status_code)),
            error_message=data.get("message") or response.reason_phrase,
        )


# ── Simulated ──────────────────────────────────────────────────────────


class SimulatedChannel:
    """Logs the message it would send and reports success."""

    name = "simulated"

    async def send(self, recipient: str, message: str) -> SendResult:
        sid = f"SIM-{uuid.uuid4().hex[:12]}"
        logger.info(
            "simulated_message_sent",
            message_sid=sid,
            to=format_whatsapp_number(recipient),
            preview=message[:80],
        )
        return SendResult(
            success=True,
            message_sid=sid,
            status=DeliveryStatus.SIMULATED,
            simulated=True,
        )

    async def close(self) -> None:
        return None


def build_channel(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> NotificationChannel:
    """Twilio when credentials are present, the simulated channel otherwise."""
    config = TwilioConfig.from_settings(settings)
    if config.is_configured:
        logger.info("channel_selected", channel=TwilioWhatsAppChannel.name)
        return TwilioWhatsAppChannel(config, transport=transport)

    logger.info(
        "channel_selected",
        channel=SimulatedChannel.name,
        reason="twilio credentials not set, messages are logged instead of sent",
    )
    return SimulatedChannel()
