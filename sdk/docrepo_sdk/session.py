"""
Collection session for docrepo.

A CollectionSession owns the store connection for one database/collection
pair and provisions them on first use.

Invariants:
    - The collection handle is published at most once per session
    - Concurrent ensure calls wait on the same lock and reuse the handle
    - Health checks never raise

How to change safely:
    - Keep ensure_collection_exists() cheap after the first success;
      every repository call goes through it
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Tuple

from .config import RepositorySettings
from .errors import DocRepoError, ProvisioningError, ValidationError
from .store.base import CollectionInfo, CollectionRef, DocumentStore, create_document_store

logger = logging.getLogger(__name__)


class CollectionSession:
    """Connection and provisioning state for one collection.

    Attributes:
        settings: Repository settings
        store: Store backend
        ref: Address of the collection

    Example:
        >>> async with CollectionSession(settings) as session:
        ...     info = await session.ensure_collection_exists()
        ...     await session.set_throughput(1000)
    """

    def __init__(
        self,
        settings: RepositorySettings,
        store: DocumentStore | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            settings: Repository settings
            store: Optional store backend (built from settings if not provided)
        """
        self.settings = settings
        self.store = store or create_document_store(settings)
        self.ref = CollectionRef(settings.database_name, settings.collection_name)
        self._collection: Optional[CollectionInfo] = None
        self._lock = asyncio.Lock()

    @property
    def collection(self) -> Optional[CollectionInfo]:
        """The cached collection handle, if provisioning has happened."""
        return self._collection

    async def connect(self) -> None:
        if not self.store.is_connected:
            await self.store.connect()

    async def close(self) -> None:
        """Close the store connection; a later call reconnects."""
        if self.store.is_connected:
            await self.store.close()

    async def __aenter__(self) -> CollectionSession:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def ensure_collection_exists(self) -> CollectionInfo:
        """Create the database and collection unless already done this session.

        Returns:
            The collection handle

        Raises:
            ProvisioningError: If the store rejects creation
        """
        async with self._lock:
            await self.connect()
            if self._collection is not None:
                return self._collection

            try:
                await self.store.create_database_if_not_exists(self.ref.database)
                info = await self.store.create_collection_if_not_exists(
                    self.ref, self.settings.partition_key
                )
            except DocRepoError as e:
                raise ProvisioningError(
                    f"Failed to provision {self.ref}: {e.message}",
                    database=self.ref.database,
                    collection=self.ref.collection,
                ) from e

            self._collection = info
            logger.info(
                "Collection ready",
                extra={
                    "database": self.ref.database,
                    "collection": self.ref.collection,
                    "partition_key": self.settings.partition_key,
                },
            )
            return info

    async def get_throughput(self) -> int:
        """Return the collection's provisioned throughput.

        Raises:
            ProvisioningError: If no throughput offer exists
        """
        await self.ensure_collection_exists()
        throughput = await self.store.read_throughput(self.ref)
        if throughput is None:
            raise ProvisioningError(
                "Failed to retrieve current offer",
                database=self.ref.database,
                collection=self.ref.collection,
            )
        return throughput

    async def set_throughput(self, request_units: int) -> None:
        """Set the collection's provisioned throughput.

        No request is made when the value already matches.

        Raises:
            ValidationError: If request_units is not a positive integer
            ProvisioningError: If no throughput offer exists or the update fails
        """
        if isinstance(request_units, bool) or not isinstance(request_units, int) or request_units <= 0:
            raise ValidationError(
                f"Throughput must be a positive integer, got {request_units!r}",
                field_name="request_units",
            )

        current = await self.get_throughput()
        if current == request_units:
            return

        try:
            await self.store.replace_throughput(self.ref, request_units)
        except DocRepoError as e:
            raise ProvisioningError(
                f"Failed to update offer for {self.ref}: {e.message}",
                database=self.ref.database,
                collection=self.ref.collection,
            ) from e

        logger.info(
            "Throughput updated",
            extra={"collection": str(self.ref), "from": current, "to": request_units},
        )

    async def is_health_ok(self) -> Tuple[bool, str]:
        """Probe the store.

        Returns:
            (True, "") when the store answers, otherwise (False, error message)
        """
        try:
            await self.connect()
            await self.store.probe()
            return True, ""
        except Exception as e:
            logger.warning("Health check failed", extra={"error": str(e)})
            return False, str(e)
