"""
Storage configuration.

One ``StorageConfig`` describes where guest data lives on this device and
how to reach the account's Cosmos DB database and Blob container. Cosmos
access is granted by one of four credentials, picked by
``cosmos_auth_method``: an account key, the ambient Azure login chain,
a managed identity, or a service principal.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from azure.identity.aio import (
    ClientSecretCredential,
    DefaultAzureCredential,
    ManagedIdentityCredential,
)

from .exceptions import AuthenticationError, ValidationError

DEFAULT_DATA_DIR = "~/.trailbook"
DEFAULT_COSMOS_DATABASE = "trailbook"
DEFAULT_BLOB_CONTAINER = "trailbook-images"
DEFAULT_POLL_INTERVAL = 5.0

_ENV_PREFIX = "TRAILBOOK_"


class CosmosAuthMethod(Enum):
    """How the Cosmos DB client proves who it is.

    ``DEFAULT_CREDENTIAL`` walks the usual Azure login chain (CLI login,
    environment, managed identity) and is the default. ``KEY`` is meant
    for local development accounts.
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


@dataclass
class StorageConfig:
    """Local paths plus remote endpoints.

    ``from_environment`` reads ``TRAILBOOK_DATA_DIR``,
    ``TRAILBOOK_COSMOS_ENDPOINT``, ``TRAILBOOK_COSMOS_AUTH_METHOD``,
    ``TRAILBOOK_COSMOS_KEY``, ``TRAILBOOK_COSMOS_DATABASE``,
    ``TRAILBOOK_BLOB_ACCOUNT_URL``, ``TRAILBOOK_BLOB_CONNECTION_STRING``
    (wins over the account URL), ``TRAILBOOK_BLOB_CONTAINER`` and
    ``TRAILBOOK_POLL_INTERVAL``, plus the standard ``AZURE_TENANT_ID``,
    ``AZURE_CLIENT_ID`` and ``AZURE_CLIENT_SECRET``.
    """

    data_dir: Path = Path(DEFAULT_DATA_DIR).expanduser()

    cosmos_endpoint: str | None = None
    cosmos_auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    cosmos_key: str | None = None
    cosmos_database: str = DEFAULT_COSMOS_DATABASE

    blob_account_url: str | None = None
    blob_connection_string: str | None = None
    blob_container: str = DEFAULT_BLOB_CONTAINER

    # Service principal / user-assigned identity
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None

    # Seconds between refreshes of remote live queries
    poll_interval: float = DEFAULT_POLL_INTERVAL

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        if self.poll_interval <= 0:
            raise ValidationError("poll_interval", "must be positive", str(self.poll_interval))

    @property
    def database_path(self) -> Path:
        return self.data_dir / "trailbook.db"

    @property
    def images_dir(self) -> Path:
        return self.data_dir / "images"

    @property
    def guest_state_path(self) -> Path:
        return self.data_dir / "guest.yaml"

    @property
    def remote_enabled(self) -> bool:
        """True once both Cosmos DB and Blob Storage are reachable by config."""
        has_blob = bool(self.blob_connection_string or self.blob_account_url)
        return bool(self.cosmos_endpoint) and has_blob

    @classmethod
    def from_environment(cls) -> StorageConfig:
        """Build a config from ``TRAILBOOK_*`` and ``AZURE_*`` variables.

        An unrecognised auth method falls back to the default credential;
        a poll interval that is not a number raises ``ValidationError``.
        """
        env = os.environ

        def setting(name: str, default: str | None = None) -> str | None:
            return env.get(_ENV_PREFIX + name, default)

        method_name = (setting("COSMOS_AUTH_METHOD") or "").lower()
        try:
            auth_method = CosmosAuthMethod(method_name)
        except ValueError:
            auth_method = CosmosAuthMethod.DEFAULT_CREDENTIAL

        raw_interval = setting("POLL_INTERVAL")
        try:
            poll_interval = float(raw_interval) if raw_interval else DEFAULT_POLL_INTERVAL
        except ValueError as e:
            raise ValidationError(
                "TRAILBOOK_POLL_INTERVAL", "must be a number of seconds", raw_interval
            ) from e

        return cls(
            data_dir=Path(setting("DATA_DIR", DEFAULT_DATA_DIR)),
            cosmos_endpoint=setting("COSMOS_ENDPOINT"),
            cosmos_auth_method=auth_method,
            cosmos_key=setting("COSMOS_KEY"),
            cosmos_database=setting("COSMOS_DATABASE", DEFAULT_COSMOS_DATABASE),
            blob_account_url=setting("BLOB_ACCOUNT_URL"),
            blob_connection_string=setting("BLOB_CONNECTION_STRING"),
            blob_container=setting("BLOB_CONTAINER", DEFAULT_BLOB_CONTAINER),
            azure_tenant_id=env.get("AZURE_TENANT_ID"),
            azure_client_id=env.get("AZURE_CLIENT_ID"),
            azure_client_secret=env.get("AZURE_CLIENT_SECRET"),
            poll_interval=poll_interval,
        )


def get_credential(config: StorageConfig) -> Any:
    """Credential for ``config.cosmos_auth_method``.

    Returns the account key string for ``KEY`` and an async azure-identity
    credential otherwise. The caller owns (and closes) the credential.

    Raises:
        AuthenticationError: A setting the method needs is missing
    """
    endpoint = config.cosmos_endpoint or "cosmos"

    match config.cosmos_auth_method:
        case CosmosAuthMethod.KEY:
            if not config.cosmos_key:
                raise AuthenticationError(endpoint, "KEY authentication needs cosmos_key")
            return config.cosmos_key
        case CosmosAuthMethod.DEFAULT_CREDENTIAL:
            return DefaultAzureCredential()
        case CosmosAuthMethod.MANAGED_IDENTITY:
            # A client id selects a user-assigned identity
            if config.azure_client_id:
                return ManagedIdentityCredential(client_id=config.azure_client_id)
            return ManagedIdentityCredential()
        case CosmosAuthMethod.SERVICE_PRINCIPAL:
            missing = [
                name
                for name in ("azure_tenant_id", "azure_client_id", "azure_client_secret")
                if not getattr(config, name)
            ]
            if missing:
                raise AuthenticationError(
                    endpoint, f"SERVICE_PRINCIPAL authentication needs {', '.join(missing)}"
                )
            return ClientSecretCredential(
                tenant_id=config.azure_tenant_id,  # type: ignore[arg-type]
                client_id=config.azure_client_id,  # type: ignore[arg-type]
                client_secret=config.azure_client_secret,  # type: ignore[arg-type]
            )

    raise AuthenticationError(endpoint, f"Unsupported auth method: {config.cosmos_auth_method}")
