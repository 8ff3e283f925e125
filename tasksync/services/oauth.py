import logging
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
from cachetools import TTLCache

from tasksync.core.config import Settings
from tasksync.core.errors import NotConfiguredError, NotFoundError
from tasksync.models import OAuthProfile

logger = logging.getLogger(__name__)


class OAuthFailure(Exception):
    """Callback failure; ``marker`` goes back to the browser as ``?error=<marker>``."""

    def __init__(self, marker: str, detail: str = ""):
        super().__init__(detail or marker)
        self.marker = marker


@dataclass(frozen=True)
class ProviderEndpoints:
    authorize_url: str
    token_url: str
    userinfo_url: str
    scopes: tuple[str, ...]
    extra_auth_params: tuple[tuple[str, str], ...] = ()


def _endpoints(settings: Settings) -> dict[str, ProviderEndpoints]:
    tenant = settings.microsoft_tenant_id
    return {
        "google": ProviderEndpoints(
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
            scopes=(
                "https://www.googleapis.com/auth/userinfo.email",
                "https://www.googleapis.com/auth/userinfo.profile",
            ),
            extra_auth_params=(("access_type", "offline"),),
        ),
        "microsoft": ProviderEndpoints(
            authorize_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
            token_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
            userinfo_url="https://graph.microsoft.com/v1.0/me",
            scopes=("User.Read",),
        ),
    }


class OAuthGateway:
    """
    Authorization-code exchange with Google and Microsoft.

    States are single use and expire after ``oauth_state_ttl_seconds``; the
    state table is a bounded TTLCache, so abandoned logins clean themselves up.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.endpoints = _endpoints(settings)
        self._states = TTLCache(maxsize=1024, ttl=settings.oauth_state_ttl_seconds)
        self._client = httpx.AsyncClient(
            timeout=settings.oauth_timeout_seconds, transport=transport
        )

    def _credentials(self, provider: str) -> tuple[str, str]:
        s = self.settings
        if provider == "google":
            return s.google_client_id, s.google_client_secret
        return s.microsoft_client_id, s.microsoft_client_secret

    def providers(self) -> dict[str, bool]:
        return {name: bool(self._credentials(name)[0]) for name in self.endpoints}

    def authorization_url(self, provider: str) -> str:
        endpoints = self.endpoints.get(provider)
        if endpoints is None:
            raise NotFoundError(f"Unknown OAuth provider: {provider}")
        client_id, _ = self._credentials(provider)
        if not client_id:
            raise NotConfiguredError(f"{provider.capitalize()} OAuth not configured")

        state = secrets.token_hex(32)
        self._states[state] = provider
        params = {
            "client_id": client_id,
            "redirect_uri": self.settings.resolved_redirect_uri,
            "response_type": "code",
            "scope": " ".join(endpoints.scopes),
            **dict(endpoints.extra_auth_params),
            "state": state,
        }
        return f"{endpoints.authorize_url}?{urlencode(params)}"

    def consume_state(self, state: str | None) -> str:
        provider = self._states.pop(state, None) if state else None
        if provider is None:
            raise OAuthFailure("oauth_invalid_state", "invalid or expired state")
        return provider

    async def complete(self, code: str | None, state: str | None) -> OAuthProfile:
        if not code or not state:
            raise OAuthFailure("oauth_failed", "missing code or state")
        provider = self.consume_state(state)
        endpoints = self.endpoints.get(provider)
        if endpoints is None:
            raise OAuthFailure("invalid_provider", provider)

        client_id, client_secret = self._credentials(provider)
        token_request = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.settings.resolved_redirect_uri,
        }
        if provider == "microsoft":
            token_request["scope"] = " ".join(endpoints.scopes)

        try:
            response = await self._client.post(endpoints.token_url, data=token_request)
            response.raise_for_status()
            access_token = response.json()["access_token"]

            response = await self._client.get(
                endpoints.userinfo_url, headers={"Authorization": f"Bearer {access_token}"}
            )
            response.raise_for_status()
            info = response.json()
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"OAuth {provider} exchange failed: {e}")
            raise OAuthFailure("oauth_failed", str(e)) from e

        return self._profile(provider, info)

    @staticmethod
    def _profile(provider: str, info: dict) -> OAuthProfile:
        email = info.get("email") or info.get("mail") or info.get("userPrincipalName")
        user_id = info.get("id") or email
        if not user_id:
            raise OAuthFailure("oauth_failed", f"{provider} profile has no id")
        return OAuthProfile(
            provider=provider,
            user_id=str(user_id),
            email=email,
            name=info.get("name") or info.get("displayName"),
            picture=info.get("picture"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
