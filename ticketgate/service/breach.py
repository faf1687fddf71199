from __future__ import annotations

import hashlib
from typing import Optional, Protocol

import httpx

from ticketgate.logging import get_logger

logger = get_logger(__name__)


class BreachChecker(Protocol):
    async def is_compromised(self, password: str) -> bool: ...


class PwnedPasswordsClient:
    """k-anonymity lookup against a Pwned Passwords compatible range API.

    Only the first five hex characters of the SHA-1 digest leave the process.
    Transport and HTTP status errors propagate as ``httpx.HTTPError``.
    """

    def __init__(
        self,
        api_url: str = "https://api.pwnedpasswords.com/range/",
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url if api_url.endswith("/") else f"{api_url}/"
        self.timeout = timeout
        self._transport = transport

    async def is_compromised(self, password: str) -> bool:
        digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.get(
                f"{self.api_url}{prefix}", headers={"Add-Padding": "true"}
            )
            response.raise_for_status()
        for line in response.text.splitlines():
            candidate, _, count = line.strip().partition(":")
            if candidate.upper() != suffix:
                continue
            try:
                hits = int(count)
            except ValueError:
                hits = 0
            # padded responses carry fake suffixes with a zero count
            if hits > 0:
                logger.info("password_found_in_breach_corpus", hits=hits)
                return True
        return False
