from __future__ import annotations

from insightdesk.domain.errors import ValidationError
from insightdesk.domain.workspaces import Identity
from insightdesk.infrastructure.duckdb_driver import DuckDBDocumentDriver
from insightdesk.infrastructure.durable import DurableResourceStore
from insightdesk.infrastructure.ephemeral import EphemeralResourceStore
from insightdesk.infrastructure.local_storage import LocalStorageRegistry
from insightdesk.infrastructure.resources import ResourceStore


class StoreSelector:
    """Picks the backend an identity's documents live in."""

    def __init__(self, local_storage: LocalStorageRegistry, driver: DuckDBDocumentDriver) -> None:
        self._local_storage = local_storage
        self._driver = driver

    @property
    def driver(self) -> DuckDBDocumentDriver:
        return self._driver

    @property
    def local_storage(self) -> LocalStorageRegistry:
        return self._local_storage

    def for_identity(self, identity: Identity) -> ResourceStore:
        if identity.is_member:
            return self.durable_for(identity)
        return self.ephemeral_for(identity)

    def durable_for(self, identity: Identity) -> DurableResourceStore:
        if not identity.is_member or not identity.id:
            raise ValidationError("identity", "durable storage requires a member identity")
        return DurableResourceStore(self._driver, identity.id)

    def ephemeral_for(self, identity: Identity) -> EphemeralResourceStore:
        if identity.is_member:
            raise ValidationError("identity", "guest storage requires a guest identity")
        return EphemeralResourceStore(self._local_storage.for_session(identity.session))

    def guest_session(self, session: str | None) -> EphemeralResourceStore:
        return EphemeralResourceStore(self._local_storage.for_session(session))
