"""
Persistent configuration: models, the encrypted local store and the
data-source catalog.

`AppConfig` is serialized to deterministic JSON, sealed with AES-256-GCM and
written to a single local file by `SecureConfigStore`.
"""

from .catalog import DataSourceCatalog
from .models import AppConfig, BackupEnvelope, KdfParams, S3DataSource
from .secure_store import SecureConfigStore

__all__ = [
    "AppConfig",
    "BackupEnvelope",
    "DataSourceCatalog",
    "KdfParams",
    "S3DataSource",
    "SecureConfigStore",
]
