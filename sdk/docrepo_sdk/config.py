"""
Configuration management for docrepo.

Settings can be built directly or loaded from environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The connection string is never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Document all new settings in the RepositorySettings docstring
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ITEMS_PER_PAGE = 1000
DEFAULT_DEGREE_OF_PARALLELISM = 5


class StoreBackend(Enum):
    """Supported store backends."""

    COSMOS = "cosmos"
    MEMORY = "memory"


@dataclass(frozen=True)
class RepositorySettings:
    """Repository configuration.

    Attributes:
        database_name: Database holding the collection
        collection_name: Collection all documents live in
        connection_string: Cosmos DB connection string (AccountEndpoint=...;AccountKey=...;)
        partition_key: Partition key path, e.g. "/content/providerId"
        default_partition_key: Partition used by queries that neither pass a
            partition key nor enable cross-partition queries
        backend: Which store backend to use
        items_per_page: Default page size for queries
        degree_of_parallelism: Default concurrency bound for bulk operations
    """

    database_name: str
    collection_name: str
    connection_string: str | None = None
    partition_key: str | None = None
    default_partition_key: str | None = None
    backend: StoreBackend = StoreBackend.COSMOS
    items_per_page: int = DEFAULT_ITEMS_PER_PAGE
    degree_of_parallelism: int = DEFAULT_DEGREE_OF_PARALLELISM

    @classmethod
    def from_env(cls) -> RepositorySettings:
        """Load configuration from environment variables.

        Raises:
            ValidationError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("DOCREPO_BACKEND", "cosmos").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValidationError(
                f"Invalid DOCREPO_BACKEND '{backend_str}'. Must be one of: cosmos, memory",
                field_name="backend",
            )

        settings = cls(
            database_name=os.getenv("COSMOS_DATABASE_NAME", ""),
            collection_name=os.getenv("COSMOS_COLLECTION_NAME", ""),
            connection_string=os.getenv("COSMOS_CONNECTION_STRING"),
            partition_key=os.getenv("COSMOS_PARTITION_KEY") or None,
            default_partition_key=os.getenv("COSMOS_DEFAULT_PARTITION_KEY") or None,
            backend=backend,
            items_per_page=int(os.getenv("DOCREPO_ITEMS_PER_PAGE", str(DEFAULT_ITEMS_PER_PAGE))),
            degree_of_parallelism=int(
                os.getenv("DOCREPO_DEGREE_OF_PARALLELISM", str(DEFAULT_DEGREE_OF_PARALLELISM))
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValidationError: If configuration is invalid.
        """
        if not self.database_name or not self.database_name.strip():
            raise ValidationError("COSMOS_DATABASE_NAME is required", field_name="database_name")
        if not self.collection_name or not self.collection_name.strip():
            raise ValidationError("COSMOS_COLLECTION_NAME is required", field_name="collection_name")
        if self.backend == StoreBackend.COSMOS:
            if not self.connection_string or not self.connection_string.strip():
                raise ValidationError(
                    "COSMOS_CONNECTION_STRING is required when DOCREPO_BACKEND=cosmos",
                    field_name="connection_string",
                )
        if self.partition_key is not None and not self.partition_key.startswith("/"):
            raise ValidationError(
                f"Partition key path must start with '/': {self.partition_key}",
                field_name="partition_key",
            )
        if self.degree_of_parallelism < 1:
            raise ValidationError(
                "Degree of parallelism must be at least 1", field_name="degree_of_parallelism"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Repository configuration loaded",
            extra={
                "backend": self.backend.value,
                "database": self.database_name,
                "collection": self.collection_name,
                "partition_key": self.partition_key,
                "default_partition_key": self.default_partition_key,
                "connection_string": "***" if self.connection_string else None,
                "items_per_page": self.items_per_page,
                "degree_of_parallelism": self.degree_of_parallelism,
            },
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )
