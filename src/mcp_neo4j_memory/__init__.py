"""
MCP server for a Neo4j-backed knowledge graph memory.

This package provides entity/relation memory stored in Neo4j, guarded raw
Cypher execution behind ephemeral security tokens, and LLM-assisted creation
of base ontologies.
"""

__version__ = "1.1.0"

from .errors import CollaboratorError, EntityNotFoundError, MemoryStoreError, StoreError
from .models import (
    AddObservationRequest,
    AddObservationResult,
    DeleteObservationRequest,
    Entity,
    KnowledgeGraph,
    PolicyRefusal,
    Relation,
    SecurityToken,
)
from .executor import QueryExecutor
from .manager import KnowledgeGraphManager
from .security import SecurityTokenGate
from .ontology import OntologyBuilder

__all__ = [
    "AddObservationRequest",
    "AddObservationResult",
    "DeleteObservationRequest",
    "Entity",
    "KnowledgeGraph",
    "PolicyRefusal",
    "Relation",
    "SecurityToken",
    "QueryExecutor",
    "KnowledgeGraphManager",
    "SecurityTokenGate",
    "OntologyBuilder",
    "MemoryStoreError",
    "EntityNotFoundError",
    "StoreError",
    "CollaboratorError",
]
