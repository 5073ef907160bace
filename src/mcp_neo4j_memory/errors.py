"""
Exception types raised by the memory store.

Policy refusals are not exceptions: they are returned as
:class:`~mcp_neo4j_memory.models.PolicyRefusal` so callers can branch on them.
"""

from typing import Optional


class MemoryStoreError(Exception):
    """Base class for all errors raised by the memory store."""


class EntityNotFoundError(MemoryStoreError, ValueError):
    """A referenced entity does not exist where one is required."""

    def __init__(self, entity_name: str):
        self.entity_name = entity_name
        super().__init__(f"Entity with name {entity_name} not found")


class StoreError(MemoryStoreError, RuntimeError):
    """
    Failure reported by the backing Neo4j store.

    The driver's native error code (e.g. ``Neo.ClientError.Statement.SyntaxError``)
    is kept in ``code`` so callers can branch on it.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class CollaboratorError(MemoryStoreError, RuntimeError):
    """The text-generation collaborator failed or returned unusable output."""
