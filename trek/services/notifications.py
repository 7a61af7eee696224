"""
Best-effort SMS delivery. ``send`` never raises: a failed text is logged and
reported as ``False`` so it can never roll back a committed state change.
"""
import logging
import re
from abc import ABC, abstractmethod

from twilio.http.async_http_client import AsyncTwilioHttpClient
from twilio.rest import Client

from trek.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def format_phone(raw: str) -> str:
    """Normalise to E.164, assuming US numbers when no country code is given."""
    digits = re.sub(r"\D", "", raw)
    if len(digits) == 10:
        digits = "1" + digits
    return "+" + digits


class Notifier(ABC):
    @abstractmethod
    async def send(self, to: str | None, message: str) -> bool:
        pass


class TwilioNotifier(Notifier):
    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        messaging_service_sid: str | None = None,
    ):
        account_sid = account_sid or settings.twilio_account_sid
        auth_token = auth_token or settings.twilio_auth_token
        self.messaging_service_sid = messaging_service_sid or settings.twilio_messaging_service_sid
        self._client: Client | None = None

        if not all([account_sid, auth_token, self.messaging_service_sid]):
            logger.warning("Twilio credentials not configured; SMS notifications disabled")
            return
        self._client = Client(account_sid, auth_token, http_client=AsyncTwilioHttpClient())

    async def send(self, to, message):
        if not to:
            logger.info("SMS skipped: no phone number on file")
            return False
        if self._client is None:
            logger.info("SMS skipped (disabled): %s", message[:60])
            return False
        try:
            sent = await self._client.messages.create_async(
                body=message,
                messaging_service_sid=self.messaging_service_sid,
                to=format_phone(to),
            )
        except Exception as exc:
            logger.error("SMS to %s failed: %s", to, exc)
            return False
        logger.info("SMS sent sid=%s", sent.sid)
        return True


# ---------------------------------------------------------------------------
# Message texts
# ---------------------------------------------------------------------------

def _route(ride) -> str:
    return f"{ride.origin} to {ride.destination}"


def new_request_text(ride, passenger_name: str) -> str:
    return f"Trek: {passenger_name} requested a seat on your ride {_route(ride)}. Open Trek to approve or reject."


def approved_text(ride) -> str:
    return f"Trek: Your request for the ride {_route(ride)} was approved!"


def rejected_text(ride) -> str:
    return f"Trek: Your request for the ride {_route(ride)} was not accepted. Your card was not charged."


def ride_full_text(ride) -> str:
    return f"Trek: The ride {_route(ride)} is now full. Your card hold has been released."


def removed_text(ride) -> str:
    return f"Trek: The driver removed you from the ride {_route(ride)}. Your card hold has been released."


def ride_cancelled_text(ride, reason: str | None) -> str:
    suffix = f" Reason: {reason}" if reason else ""
    return f"Trek: The ride {_route(ride)} was cancelled.{suffix} Any card hold has been released."


def passenger_left_text(ride, passenger_name: str) -> str:
    return f"Trek: {passenger_name} cancelled their seat on your ride {_route(ride)}."


def settlement_cancelled_text(ride) -> str:
    return f"Trek: Your ride {_route(ride)} was not completed in time, so the card hold has been released."
