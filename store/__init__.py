"""Durable object storage and the JSON track/group index."""

from .storage_provider import StorageProvider
from .s3_provider import S3StorageProvider
from .local_provider import LocalStorageProvider
from .provider_factory import StorageProviderFactory

__all__ = ["StorageProvider", "S3StorageProvider", "LocalStorageProvider", "StorageProviderFactory"]
