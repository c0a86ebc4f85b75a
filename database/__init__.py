"""
Database layer — tenant-scoped persistence for the dispatch pipeline.

Backends:
  - MongoDB (pymongo async client)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.mongo)
  user = await store.get_user("acme", "64b7f0c2e4b0a1a2b3c4d5e6")
"""
from database.namespaces import StorageNamespaces
from database.store_base import BaseDispatchStore, StoreError
from database.store_memory import InMemoryDispatchStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "StorageNamespaces",
    "BaseDispatchStore", "StoreError",
    "InMemoryDispatchStore",
    "create_store", "get_store", "reset_store",
]
