import logging
from typing import Optional, Protocol

import httpx

from carelink import config

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class SmsSender(Protocol):
    def send(self, phone_number: str, message: str) -> bool: ...


class TwilioSmsSender:
    """Sends SMS through the Twilio REST API.

    Returns False instead of raising: the sender is disabled without
    credentials, and delivery failures are logged.
    """

    def __init__(
        self,
        account_sid: str = config.TWILIO_ACCOUNT_SID,
        auth_token: str = config.TWILIO_AUTH_TOKEN,
        from_number: str = config.TWILIO_FROM_NUMBER,
        timeout: float = config.SMS_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send(self, phone_number: str, message: str) -> bool:
        if not self.enabled:
            logger.info("SMS sender disabled: Twilio credentials not set")
            return False
        if not phone_number or not phone_number.startswith("+"):
            logger.warning("SMS not sent: phone number not in E.164 format: %s", phone_number)
            return False

        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        data = {"To": phone_number, "From": self.from_number, "Body": message}
        try:
            if self._client is not None:
                response = self._client.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, data=data, auth=(self.account_sid, self.auth_token))
        except httpx.HTTPError:
            logger.exception("SMS send failed to=%s", phone_number)
            return False

        if response.status_code >= 400:
            logger.warning("Twilio rejected SMS to=%s status=%s body=%s", phone_number, response.status_code, response.text[:200])
            return False
        logger.info("SMS sent to=%s", phone_number)
        return True


sms_sender = TwilioSmsSender()
