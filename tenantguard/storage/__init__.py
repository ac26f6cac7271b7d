"""
Persistence backends for tenantguard.

Key Components:
    - Storage: Abstract interface over principals, tenants and audit events
    - InMemoryStorage: Dict-backed store for tests and embedding
    - SQLAlchemyStorage: Async SQLAlchemy store (see ``tenantguard.storage.sql``)

``SQLAlchemyStorage`` is not imported here so that the in-memory store
can be used without configuring a database engine.
"""

from tenantguard.storage.base import Storage
from tenantguard.storage.memory import InMemoryStorage

__all__ = [
    "Storage",
    "InMemoryStorage",
]
