"""Infrastructure layer exports."""

from .assistant import (
    AssistantClient,
    AssistantReply,
    AssistantRequest,
    configure_assistant_client,
    get_assistant_client,
)
from .duckdb_driver import DuckDBDocumentDriver
from .durable import DurableResourceStore
from .ephemeral import EphemeralResourceStore
from .identity import GuestTokenSigner, resolve_identity
from .local_storage import FileLocalStorage, InMemoryLocalStorage, LocalStorageDriver, LocalStorageRegistry
from .quota_store import DurableQuotaCounterStore, LocalQuotaCounterStore, QuotaCounterStore
from .resources import ResourceStore
from .selector import StoreSelector

__all__ = [
    "AssistantClient",
    "AssistantReply",
    "AssistantRequest",
    "DuckDBDocumentDriver",
    "DurableQuotaCounterStore",
    "DurableResourceStore",
    "EphemeralResourceStore",
    "FileLocalStorage",
    "GuestTokenSigner",
    "InMemoryLocalStorage",
    "LocalQuotaCounterStore",
    "LocalStorageDriver",
    "LocalStorageRegistry",
    "QuotaCounterStore",
    "ResourceStore",
    "StoreSelector",
    "configure_assistant_client",
    "get_assistant_client",
    "resolve_identity",
]
