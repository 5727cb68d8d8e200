"""
Vault Client Utility

Resolves origin secrets (database DSNs, provider API tokens) from a HashiCorp
Vault KV v2 engine, so that configuration files never carry credentials.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

logger = logging.getLogger(__name__)

# Keys accepted for a provider API token, in lookup order
TOKEN_KEYS = ("api_token", "token", "access_token")


@dataclass
class HealthStatus:
    """
    Health of the Vault connection.

    Attributes:
        healthy: Authenticated and unsealed
        authenticated: Whether the token is valid
        sealed: Whether Vault is sealed
        error: Error message if the check failed
    """

    healthy: bool
    authenticated: bool
    sealed: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.healthy


class VaultClient:
    """Read-only client for origin secrets stored in Vault."""

    def __init__(
        self,
        vault_url: Optional[str] = None,
        vault_token: Optional[str] = None,
        verify_ssl: bool = True,
        mount_point: str = "secret"
    ):
        """
        Initialize Vault client.

        Args:
            vault_url: Vault server URL (defaults to VAULT_ADDR env var)
            vault_token: Vault authentication token (defaults to VAULT_TOKEN env var)
            verify_ssl: Whether to verify SSL certificates
            mount_point: KV secrets engine mount point

        Raises:
            ValueError: If URL or token is missing
            VaultError: If authentication fails
        """
        self.vault_url = vault_url or os.getenv("VAULT_ADDR")
        self.vault_token = vault_token or os.getenv("VAULT_TOKEN")
        self.mount_point = mount_point

        if not self.vault_url:
            raise ValueError("Vault URL must be provided via parameter or VAULT_ADDR environment variable")

        if not self.vault_token:
            raise ValueError("Vault token must be provided via parameter or VAULT_TOKEN environment variable")

        self.client = hvac.Client(url=self.vault_url, token=self.vault_token, verify=verify_ssl)

        if not self.client.is_authenticated():
            logger.error(f"Failed to authenticate with Vault at {self.vault_url}")
            raise VaultError("Failed to authenticate with Vault")

        logger.info(f"Connected to Vault at {self.vault_url}")

    @classmethod
    def from_env(cls) -> Optional["VaultClient"]:
        """Return a client if VAULT_ADDR and VAULT_TOKEN are set, else None."""
        if os.getenv("VAULT_ADDR") and os.getenv("VAULT_TOKEN"):
            return cls()
        return None

    def get_secret(self, path: str) -> Dict[str, Any]:
        """
        Retrieve a secret from the KV v2 engine.

        Args:
            path: Secret path relative to the mount point (e.g. "statesync/prod-db")

        Returns:
            Secret data

        Raises:
            InvalidPath: If no secret exists at the path
            VaultError: If retrieval fails
        """
        logger.debug(f"Retrieving secret {self.mount_point}/data/{path}")

        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=path,
                mount_point=self.mount_point
            )
        except InvalidPath:
            logger.error(f"Secret not found at path: {path}")
            raise
        except VaultError as e:
            logger.error(f"Failed to retrieve secret from {path}: {e}")
            raise

        if not response or "data" not in response:
            raise InvalidPath(f"No data found at path: {path}")

        return response["data"].get("data", {})

    def get_database_dsn(self, path: str) -> str:
        """
        Build a PostgreSQL DSN from a secret.

        The secret either carries a ready "dsn" or the parts host, port,
        dbname, user and password.

        Args:
            path: Secret path

        Returns:
            libpq connection string
        """
        secret = self.get_secret(path)

        if secret.get("dsn"):
            return secret["dsn"]

        missing = [key for key in ("host", "dbname", "user") if not secret.get(key)]
        if missing:
            raise VaultError(f"Secret {path} lacks database fields: {missing}")

        parts = [
            f"host={secret['host']}",
            f"port={secret.get('port', 5432)}",
            f"dbname={secret['dbname']}",
            f"user={secret['user']}",
        ]
        if secret.get("password"):
            parts.append(f"password={secret['password']}")

        return " ".join(parts)

    def get_api_token(self, path: str) -> str:
        """
        Read a provider API token from a secret.

        Args:
            path: Secret path

        Returns:
            Token value
        """
        secret = self.get_secret(path)

        for key in TOKEN_KEYS:
            if secret.get(key):
                return secret[key]

        raise VaultError(f"Secret {path} has none of the token keys {list(TOKEN_KEYS)}")

    def health_check(self) -> HealthStatus:
        """
        Check if Vault is accessible, authenticated and unsealed.

        Returns:
            HealthStatus; usable as a boolean
        """
        try:
            if not self.client.is_authenticated():
                logger.warning("Vault authentication check failed")
                return HealthStatus(healthy=False, authenticated=False, sealed=True, error="Not authenticated")

            health = self.client.sys.read_health_status(method="GET")
            sealed = health.get("sealed", True) if isinstance(health, dict) else True

            return HealthStatus(
                healthy=not sealed,
                authenticated=True,
                sealed=sealed,
                error="Vault is sealed" if sealed else None
            )

        except (VaultError, OSError) as e:
            logger.error(f"Vault health check failed: {e}")
            return HealthStatus(healthy=False, authenticated=False, sealed=True, error=str(e))
