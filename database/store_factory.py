"""
Store Factory — Create the right dispatch store backend from configuration.

Configuration in settings.yaml:
    mongo:
      url: "mongodb://localhost:27017"
      # Dispatch store backend
      #   "mongo"  — MongoDB (production)
      #   "memory" — In-memory dicts (development, testing)
      store_backend: "memory"

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from MongoConfig
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import MongoConfig
from database.namespaces import StorageNamespaces
from database.store_base import BaseDispatchStore

logger = structlog.get_logger()

_instance: Optional[BaseDispatchStore] = None


def create_store(config: MongoConfig = None) -> BaseDispatchStore:
    """Factory: create the appropriate dispatch store backend."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or MongoConfig()

    if config.store_backend == "mongo":
        from database.store_mongo import MongoDispatchStore
        _instance = MongoDispatchStore(config)
        logger.info("store_created", backend="mongo")
    else:  # "memory" or default
        from database.store_memory import InMemoryDispatchStore
        _instance = InMemoryDispatchStore(StorageNamespaces(config))
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseDispatchStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
