"""
Data models for the Neo4j-backed knowledge graph memory.

This module defines the entities, relations and graph container persisted in
Neo4j, the request/result shapes of the graph tools, the ephemeral security
token, and the structures exchanged with the text-generation collaborator
while building a base ontology.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

TOKEN_TTL = timedelta(minutes=5)


def _unique(values: List[str]) -> List[str]:
    """Drop repeated values, keeping the first occurrence of each."""
    seen = set()
    unique = []
    for value in values:
        if value not in seen:
            seen.add(value)
            unique.append(value)
    return unique


class Entity(BaseModel):
    """
    Primary nodes in the knowledge graph.

    Each entity has a unique name, a type classification, and an ordered list
    of observations without repeated values. Timestamps are filled in by the
    store and come back as ISO-8601 strings.
    """

    name: str = Field(..., description="Unique identifier for the entity")
    entity_type: str = Field(default="", description="Type classification (e.g., 'person', 'organization', 'event')", alias="entityType")
    observations: List[str] = Field(default_factory=list, description="Ordered observation contents")
    created_at: Optional[str] = Field(default=None, description="ISO timestamp of first insert", alias="createdAt")
    updated_at: Optional[str] = Field(default=None, description="ISO timestamp of last save", alias="updatedAt")

    class Config:
        populate_by_name = True

    @field_validator("observations", mode="before")
    @classmethod
    def _dedupe_observations(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return _unique([str(v) for v in value])
        return value

    def to_store(self) -> Dict[str, Any]:
        """Properties written to the ``:Memory`` node; timestamps are owned by the store."""
        return {"name": self.name, "entityType": self.entity_type, "observations": list(self.observations)}


class Relation(BaseModel):
    """
    Directed connections between entities.

    Relations are stored in active voice; ``(from, to, relationType)`` is the
    identity of a relation within the graph.
    """

    from_entity: str = Field(..., description="Source entity name", alias="from")
    to_entity: str = Field(..., description="Target entity name", alias="to")
    relation_type: str = Field(..., description="Relationship type in active voice", alias="relationType")

    class Config:
        populate_by_name = True

    @property
    def key(self) -> tuple:
        return (self.from_entity, self.to_entity, self.relation_type)


class KnowledgeGraph(BaseModel):
    """Complete (or filtered) knowledge graph: entities and the relations between them."""

    entities: List[Entity] = Field(default_factory=list, description="Entities in the knowledge graph")
    relations: List[Relation] = Field(default_factory=list, description="Relations between entities")


class AddObservationRequest(BaseModel):
    """Request model for adding observations to an entity."""

    entity_name: str = Field(..., description="The name of the entity to add observations to", alias="entityName")
    contents: List[str] = Field(..., description="Observation contents to add")

    class Config:
        populate_by_name = True


class AddObservationResult(BaseModel):
    """Result of adding observations to an entity."""

    entity_name: str = Field(..., description="The entity name that was updated", alias="entityName")
    added_observations: List[str] = Field(..., description="Contents actually appended (duplicates excluded)", alias="addedObservations")

    class Config:
        populate_by_name = True


class DeleteObservationRequest(BaseModel):
    """Request model for deleting observations from an entity."""

    entity_name: str = Field(..., description="The name of the entity containing the observations", alias="entityName")
    observations: List[str] = Field(..., description="Array of observation contents to delete")

    class Config:
        populate_by_name = True


class SecurityToken(BaseModel):
    """
    Ephemeral capability record stored as a ``:SecurityNode``.

    A token is issued right before a gated write sequence and revoked right
    after it, whatever the outcome.
    """

    name: str
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")

    class Config:
        populate_by_name = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(self.expires_at.tzinfo)
        return now >= self.expires_at


class PolicyRefusal(BaseModel):
    """Structured refusal of a write query that was not authorized."""

    error: str = "Security error: Write operations (CREATE, SET, DELETE, REMOVE, MERGE) detected but no security node provided."
    details: str = (
        "This API requires a valid security node for write operations. To enable this, the server "
        "administrator must set ALLOW_CYPHER_QUERY_USER_INSISTS to \"true\" (and the user must insist "
        "that the query be executed), or NEO4J_UNSAFE_MEMORY_CYPHERS to \"true\" (in which case writes "
        "are always allowed)."
    )
    has_write_ops: bool = Field(True, alias="hasWriteOps")
    security_node_name: Optional[str] = Field(None, alias="securityNodeName")
    allow_unsafe_queries: bool = Field(False, alias="allowUnsafeQueries")
    user_insists: bool = Field(False, alias="userInsists")
    user_insists_allowed: bool = Field(False, alias="userInsistsAllowed")
    unmet_conditions: List[str] = Field(default_factory=list, alias="unmetConditions")

    class Config:
        populate_by_name = True


class CypherQueryResult(BaseModel):
    """Outcome of a ``safe_cypher_query`` call that was allowed to run."""

    result: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = Field(0, alias="rowCount")
    query_type: Literal["read", "write"] = Field("read", alias="queryType")
    message: Optional[str] = None
    counters: Optional[Dict[str, int]] = Field(None, description="Non-zero update counters of a write")

    class Config:
        populate_by_name = True


class OntologyEntity(BaseModel):
    name: str
    type: str = "EntityType"
    description: str = ""


class OntologyRelationship(BaseModel):
    from_entity: str = Field(..., alias="from")
    to_entity: str = Field(..., alias="to")
    type: str
    description: str = ""

    class Config:
        populate_by_name = True


class OntologyHierarchy(BaseModel):
    parent: str
    children: List[str] = Field(default_factory=list)


class OntologyStructure(BaseModel):
    """Ontology layout proposed by the text-generation collaborator."""

    name: str
    description: str = ""
    entities: List[OntologyEntity] = Field(default_factory=list)
    relationships: List[OntologyRelationship] = Field(default_factory=list)
    hierarchy: List[OntologyHierarchy] = Field(default_factory=list)

    @classmethod
    def default_for(cls, subject: str) -> "OntologyStructure":
        """Conservative structure used when the generated one cannot be parsed."""
        return cls(
            name=f"(BO): {subject}",
            description=f"Base Ontology for {subject}",
            entities=[
                OntologyEntity(name="(OE): Concept", description=f"A concept within the {subject} domain"),
                OntologyEntity(name="(OE): Property", description=f"A property in the {subject} domain"),
                OntologyEntity(name="(OE): Relationship", description=f"A relationship in the {subject} domain"),
            ],
        )


class GeneratedStatement(BaseModel):
    """One generated write statement, validated before it is executed."""

    description: str = ""
    query: str

    @field_validator("query")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be empty")
        return value


class GeneratedStatements(BaseModel):
    queries: List[GeneratedStatement] = Field(default_factory=list)


class OntologyConnection(BaseModel):
    existing_ontology: str = Field(..., alias="existingOntology")
    relationship: Literal["parent", "child", "related"]
    confidence: float = 0.0
    reasoning: str = ""

    class Config:
        populate_by_name = True


class OntologyResult(BaseModel):
    """Result of a ``create_base_ontology`` request."""

    success: bool
    message: str
    base_ontologies: List[Dict[str, Any]] = Field(default_factory=list, alias="baseOntologies")
    structure: Optional[OntologyStructure] = None
    execution_results: List[Dict[str, Any]] = Field(default_factory=list, alias="executionResults")
    parent_linked: bool = Field(False, alias="parentLinked")
    steps: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True
