"""
Provider credential handling.

Exchanges a stored refresh token for short-lived access tokens using
AuthLib's async OAuth2 client, and refreshes transparently once the
cached access token is close to expiry.
"""

import base64
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2 import OAuth2Error

from src.config.settings import settings
from src.utils.error_handling import CredentialError
from src.utils.logging import get_logger

logger = get_logger(__name__)

GOOGLE = "google"
MICROSOFT = "microsoft"
SUPPORTED_PROVIDERS = (GOOGLE, MICROSOFT)

# Refresh this many seconds before the provider's stated expiry
EXPIRY_SKEW_SECONDS = 60


@dataclass
class ProviderCredentials:
    organization_id: int
    provider: str
    refresh_token: str
    scope: Optional[str] = None
    credential_id: Optional[int] = None


@dataclass
class AccessToken:
    access_token: str
    expires_at: float
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None

    def is_expired(self, now: float, skew: float = EXPIRY_SKEW_SECONDS) -> bool:
        return now >= self.expires_at - skew


def decode_jwt_claims(token: str) -> Dict[str, Any]:
    """Read the payload of a JWT without verifying it (tenant id lookup only)."""
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        return json.loads(base64.urlsafe_b64decode(payload.encode()).decode())
    except (IndexError, ValueError) as e:
        raise CredentialError("Provider returned an unreadable id_token", original_exception=e)


class OAuthTokenManager:
    """
    Holds one organization's refresh token and hands out valid access tokens.

    Usage:
        manager = create_token_manager(credentials)
        token = await manager.get_access_token()
    """

    def __init__(
        self,
        credentials: ProviderCredentials,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: Optional[str] = None,
        timeout: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        if not credentials.refresh_token:
            raise CredentialError(
                f"No refresh token stored for {credentials.provider}",
                organization_id=str(credentials.organization_id),
            )
        self.credentials = credentials
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.timeout = timeout
        self._clock = clock
        self._token: Optional[AccessToken] = None

    @property
    def rotated_refresh_token(self) -> Optional[str]:
        """New refresh token issued by the provider, if it differs from the stored one."""
        if self._token and self._token.refresh_token and self._token.refresh_token != self.credentials.refresh_token:
            return self._token.refresh_token
        return None

    @property
    def id_token(self) -> Optional[str]:
        return self._token.id_token if self._token else None

    async def get_access_token(self) -> str:
        if self._token is None or self._token.is_expired(self._clock()):
            await self.refresh()
        return self._token.access_token

    async def refresh(self) -> AccessToken:
        """Exchange the refresh token. Any failure is a CredentialError."""
        org_id = str(self.credentials.organization_id)
        logger.debug(f"Refreshing {self.credentials.provider} access token for organization {org_id}")
        try:
            payload = await self._request_token()
        except (OAuthError, OAuth2Error) as e:
            raise CredentialError(
                f"{self.credentials.provider} rejected the refresh token: {e}",
                organization_id=org_id,
                original_exception=e,
            )
        except httpx.HTTPError as e:
            raise CredentialError(
                f"Could not reach {self.credentials.provider} token endpoint: {e}",
                organization_id=org_id,
                original_exception=e,
            )

        access_token = payload.get("access_token")
        if not access_token:
            raise CredentialError(
                f"Could not refresh {self.credentials.provider} tokens",
                organization_id=org_id,
            )

        now = self._clock()
        expires_at = payload.get("expires_at") or now + float(payload.get("expires_in") or 3600)
        self._token = AccessToken(
            access_token=access_token,
            expires_at=float(expires_at),
            refresh_token=payload.get("refresh_token"),
            id_token=payload.get("id_token"),
        )
        return self._token

    async def _request_token(self) -> Dict[str, Any]:
        async with AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            timeout=self.timeout,
        ) as client:
            token = await client.refresh_token(
                self.token_url,
                refresh_token=self.credentials.refresh_token,
            )
        return dict(token)


def create_token_manager(credentials: ProviderCredentials) -> OAuthTokenManager:
    """Build the token manager for the credential's provider from settings."""
    provider = (credentials.provider or "").lower()
    if provider == GOOGLE:
        client_id, client_secret = settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET
        token_url, scope = settings.GOOGLE_TOKEN_URL, None
    elif provider == MICROSOFT:
        client_id, client_secret = settings.MICROSOFT_CLIENT_ID, settings.MICROSOFT_CLIENT_SECRET
        token_url, scope = settings.MICROSOFT_TOKEN_URL, settings.MICROSOFT_TOKEN_SCOPE
    else:
        raise CredentialError(
            f"Unsupported provider '{credentials.provider}'",
            organization_id=str(credentials.organization_id),
        )

    if not client_id or not client_secret:
        raise CredentialError(
            f"OAuth client for {provider} is not configured",
            organization_id=str(credentials.organization_id),
        )

    return OAuthTokenManager(
        credentials,
        token_url=token_url,
        client_id=client_id,
        client_secret=client_secret,
        scope=scope,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )
