from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx

from ticketgate.config import Settings
from ticketgate.logging import get_logger
from ticketgate.service.errors import AuthenticationError
from ticketgate.storage.models import UserIdentity

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
    "github": {
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
}


class IdentityResolver(Protocol):
    async def resolve_identity(self, provider: str, code: str) -> UserIdentity: ...


class OAuthProviderResolver:
    """Exchanges an authorization code for the provider's user identity.

    Codes registered through ``register_code`` resolve without network access
    and are single use. Rejected exchanges raise ``AuthenticationError``;
    transport failures propagate as ``httpx.HTTPError``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._code_registry: dict[tuple[str, str], UserIdentity] = {}
        self.logger = logger

    def register_code(self, provider: str, code: str, identity: UserIdentity) -> None:
        self._code_registry[(provider, code)] = identity

    def _credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    async def resolve_identity(self, provider: str, code: str) -> UserIdentity:
        registered = self._code_registry.pop((provider, code), None)
        if registered is not None:
            return registered

        if provider not in OAUTH_PROVIDERS:
            raise AuthenticationError("unknown provider", detail={"provider": provider})
        client_id, client_secret = self._credentials(provider)
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            self.logger.error("oauth_credentials_missing", provider=provider)
            raise AuthenticationError("provider is not configured", detail={"provider": provider})

        config = OAUTH_PROVIDERS[provider]
        async with httpx.AsyncClient(
            timeout=self.settings.outbound_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        ) as client:
            token_response = await client.post(
                config["token_url"],
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
            if token_response.status_code in (400, 401):
                self.logger.warning(
                    "oauth_code_rejected",
                    provider=provider,
                    status_code=token_response.status_code,
                )
                raise AuthenticationError("authorization code rejected")
            token_response.raise_for_status()
            access_token = self._json_dict(token_response).get("access_token")
            if not access_token:
                self.logger.warning("oauth_no_access_token", provider=provider)
                raise AuthenticationError("authorization code rejected")

            headers = {"Authorization": f"Bearer {access_token}"}
            if provider == "github":
                headers["Accept"] = "application/vnd.github+json"
            userinfo_response = await client.get(config["userinfo_url"], headers=headers)
            userinfo_response.raise_for_status()
            identity = self._parse_userinfo(provider, self._json_dict(userinfo_response))
            if not identity.provider_uid:
                self.logger.error("oauth_identity_missing_uid", provider=provider)
                raise AuthenticationError("provider returned no user id")

            if provider == "github" and not identity.email:
                emails_response = await client.get(config["emails_url"], headers=headers)
                if emails_response.status_code == 200:
                    identity.email = next(
                        (
                            e.get("email")
                            for e in self._json_list(emails_response)
                            if isinstance(e, dict) and e.get("primary") and e.get("verified")
                        ),
                        None,
                    )

        self.logger.info("oauth_exchange_success", provider=provider)
        return identity

    @staticmethod
    def _json_dict(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _json_list(response: httpx.Response) -> list[Any]:
        try:
            data = response.json()
        except ValueError:
            return []
        return data if isinstance(data, list) else []

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: dict[str, Any]) -> UserIdentity:
        if provider == "google":
            return UserIdentity(
                provider=provider,
                provider_uid=str(userinfo.get("id") or ""),
                email=userinfo.get("email"),
                display_name=userinfo.get("name"),
                avatar_url=userinfo.get("picture"),
                locale=userinfo.get("locale"),
            )
        return UserIdentity(
            provider=provider,
            provider_uid=str(userinfo.get("id") or ""),
            email=userinfo.get("email"),
            display_name=userinfo.get("name") or userinfo.get("login"),
            avatar_url=userinfo.get("avatar_url"),
        )
