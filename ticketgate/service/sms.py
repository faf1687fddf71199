from __future__ import annotations

from typing import Optional, Protocol

import httpx

from ticketgate.logging import get_logger

logger = get_logger(__name__)


class SmsSender(Protocol):
    async def send(self, phone_number: str, message: str) -> None: ...


class SmsService:
    """Text messages through a Twilio-compatible messages endpoint.

    Logs instead of sending when no gateway is configured (dev mode).
    """

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.from_number)

    async def send(self, phone_number: str, message: str) -> None:
        if not self.is_configured:
            logger.info("sms_dev_mode", phone_number=phone_number)
            return
        auth = (
            httpx.BasicAuth(self.account_sid, self.auth_token)
            if self.account_sid and self.auth_token
            else None
        )
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.api_url,
                data={"To": phone_number, "From": self.from_number, "Body": message},
                auth=auth,
            )
            response.raise_for_status()
        logger.info("sms_sent", phone_number=phone_number)
