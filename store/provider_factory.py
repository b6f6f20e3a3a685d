"""
Factory for creating storage provider instances.

Simplifies provider selection and initialization.
"""

from shared.config import GatewayConfig, StorageBackend
from .storage_provider import StorageProvider
from .s3_provider import S3StorageProvider
from .local_provider import LocalStorageProvider


class StorageProviderFactory:
    """Factory for creating storage provider instances."""

    @staticmethod
    def create(config: GatewayConfig) -> StorageProvider:
        """
        Create the storage provider selected by the configuration.

        Args:
            config: Gateway configuration

        Returns:
            Storage provider instance

        Raises:
            ValueError: If the backend is not supported
        """
        if config.backend in (StorageBackend.CLOUDFLARE_R2, StorageBackend.GENERIC_S3):
            return S3StorageProvider(
                endpoint_url=config.endpoint,
                bucket_name=config.bucket,
                access_key_id=config.access_key_id,
                secret_access_key=config.secret_access_key,
            )

        elif config.backend == StorageBackend.LOCAL:
            return LocalStorageProvider(config.local_storage_path)

        else:
            raise ValueError(f"Unknown storage backend: {config.backend}")

    @staticmethod
    def get_provider_name(backend: StorageBackend) -> str:
        """Get human-readable provider name."""
        names = {
            StorageBackend.CLOUDFLARE_R2: "Cloudflare R2",
            StorageBackend.GENERIC_S3: "Generic S3-Compatible",
            StorageBackend.LOCAL: "Local Filesystem",
        }
        return names.get(backend, "Unknown")
