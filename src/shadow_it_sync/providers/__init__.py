"""Identity provider directory clients."""

from src.shadow_it_sync.providers.base import DirectoryClient
from src.shadow_it_sync.providers.credentials import (
    GOOGLE,
    MICROSOFT,
    ProviderCredentials,
    create_token_manager,
)
from src.shadow_it_sync.providers.google import GoogleDirectoryClient
from src.shadow_it_sync.providers.microsoft import MicrosoftDirectoryClient
from src.utils.error_handling import CredentialError

CLIENTS = {
    GOOGLE: GoogleDirectoryClient,
    MICROSOFT: MicrosoftDirectoryClient,
}


def create_directory_client(credentials: ProviderCredentials, **kwargs) -> DirectoryClient:
    """Directory client for the credential's provider, with a fresh token manager."""
    client_cls = CLIENTS.get((credentials.provider or "").lower())
    if client_cls is None:
        raise CredentialError(
            f"Unsupported provider '{credentials.provider}'",
            organization_id=str(credentials.organization_id),
        )
    return client_cls(create_token_manager(credentials), **kwargs)


__all__ = [
    "CLIENTS",
    "DirectoryClient",
    "GoogleDirectoryClient",
    "MicrosoftDirectoryClient",
    "ProviderCredentials",
    "create_directory_client",
]
