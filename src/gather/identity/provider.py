"""External account-linkage provider client.

The provider (a wallet/auth service) knows which platform accounts a person
has linked under one external auth id. Lookups use HTTP basic auth with the
app id and secret.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from gather.config import Settings
from gather.errors import DependencyUnavailable
from gather.identity.platforms import Platform, make_platform_user_id

logger = structlog.get_logger()

# provider account type -> (platform, field holding the native id)
_ACCOUNT_FIELDS: dict[str, tuple[Platform, str]] = {
    "telegram": (Platform.TELEGRAM, "telegram_user_id"),
    "farcaster": (Platform.FARCASTER, "fid"),
    "discord_oauth": (Platform.DISCORD, "subject"),
    "twitter_oauth": (Platform.TWITTER, "subject"),
    "github_oauth": (Platform.GITHUB, "subject"),
    "apple_oauth": (Platform.APPLE, "subject"),
    "email": (Platform.EMAIL, "address"),
    "phone": (Platform.PHONE, "number"),
}


@dataclass(frozen=True)
class LinkedAccount:
    platform: Platform
    native_id: str
    display_name: str | None = None

    @property
    def platform_user_id(self) -> str:
        return make_platform_user_id(self.platform, self.native_id)


@dataclass(frozen=True)
class LinkageRecord:
    """Every platform account the provider links to one external auth id."""

    external_auth_id: str
    accounts: tuple[LinkedAccount, ...] = field(default_factory=tuple)

    def platform_user_ids(self) -> list[str]:
        return [a.platform_user_id for a in self.accounts]


def parse_linkage(payload: dict[str, Any]) -> LinkageRecord | None:
    """Build a LinkageRecord from a provider user document."""
    external_id = payload.get("id") or payload.get("did")
    if not external_id:
        return None
    accounts: list[LinkedAccount] = []
    for raw in payload.get("linked_accounts") or []:
        mapping = _ACCOUNT_FIELDS.get(raw.get("type", ""))
        if mapping is None:
            continue
        platform, id_field = mapping
        native = raw.get(id_field)
        if native in (None, ""):
            continue
        display = raw.get("username") or raw.get("first_name") or raw.get("display_name")
        accounts.append(LinkedAccount(platform=platform, native_id=str(native), display_name=display))
    # The provider's own user is the web account.
    accounts.append(LinkedAccount(platform=Platform.WEB, native_id=str(external_id)))
    return LinkageRecord(external_auth_id=str(external_id), accounts=tuple(accounts))


class LinkageProvider:
    """HTTP client for the account-linkage provider."""

    def __init__(
        self,
        base_url: str,
        app_id: str,
        app_secret: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.app_secret = app_secret
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> LinkageProvider | None:
        """Configured provider, or None when linkage lookups are disabled."""
        if not (settings.identity_provider_url and settings.identity_provider_app_id):
            return None
        return cls(
            base_url=settings.identity_provider_url,
            app_id=settings.identity_provider_app_id,
            app_secret=settings.identity_provider_app_secret,
            timeout=settings.identity_provider_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(self.app_id, self.app_secret),
            headers={"privy-app-id": self.app_id},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def get_linkage(self, external_auth_id: str) -> LinkageRecord | None:
        """Full linkage record for an external auth id, or None if the provider does not know it."""
        return await self._request("GET", f"/api/v1/users/{external_auth_id}")

    async def find_linkage(self, platform: Platform, native_id: str) -> LinkageRecord | None:
        """Linkage record of whoever linked this platform account."""
        if platform == Platform.WEB:
            return await self.get_linkage(native_id)
        body = {"filter": {platform.value: {"subject": native_id}}, "limit": 1}
        return await self._request("POST", "/api/v1/users/search", json=body)

    async def _request(self, method: str, path: str, json: dict | None = None) -> LinkageRecord | None:
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.warning("linkage_provider_unreachable", path=path, error=str(exc))
            msg = "Account linkage provider unavailable"
            raise DependencyUnavailable(msg) from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.warning("linkage_provider_error", path=path, status=response.status_code)
            msg = f"Account linkage provider returned {response.status_code}"
            raise DependencyUnavailable(msg)

        payload = response.json()
        if isinstance(payload, dict) and isinstance(payload.get("data"), list):
            payload = payload["data"][0] if payload["data"] else None
        if not payload:
            return None
        return parse_linkage(payload)
