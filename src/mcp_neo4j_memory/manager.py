"""
Knowledge Graph Manager backed by Neo4j.

This module contains the core business logic for managing the knowledge graph.
Entity, relation and observation operations treat the whole ``:Memory`` graph
as one document: load it, merge the change in memory with de-duplication,
and save it back. Only entity deletion is a direct, single-statement write.

The load→save round trip is not isolated. Two writers that overlap it can
lose each other's de-duplication decision; narrowing these operations to
per-entity conditional upserts would close that gap without changing the
public contracts.
"""

import logging
from typing import Any, Dict, List

from neo4j import AsyncDriver

from .config import LOGGER_NAME
from .errors import EntityNotFoundError, StoreError
from .executor import QueryExecutor
from .models import (
    AddObservationRequest,
    AddObservationResult,
    DeleteObservationRequest,
    Entity,
    KnowledgeGraph,
    Relation,
)

logger = logging.getLogger(LOGGER_NAME)

LOAD_GRAPH_QUERY = """
MATCH (entity:Memory)
WHERE entity.name IS NOT NULL
OPTIONAL MATCH (entity)-[r:Memory]->(other:Memory)
WHERE other.name IS NOT NULL AND r.relationType IS NOT NULL
WITH entity, collect(
  CASE WHEN r IS NULL THEN null
  ELSE {from: entity.name, to: other.name, relationType: r.relationType} END
) AS relations
RETURN entity, relations
ORDER BY entity.createdAt, entity.name
"""

UPSERT_ENTITIES_QUERY = """
UNWIND $entities AS entity
MERGE (memory:Memory {name: entity.name})
ON CREATE SET
  memory += entity,
  memory.createdAt = datetime({timezone: $tz}),
  memory.updatedAt = datetime({timezone: $tz})
ON MATCH SET
  memory += entity,
  memory.updatedAt = datetime({timezone: $tz})
"""

UPSERT_RELATIONS_QUERY = """
UNWIND $relations AS relation
MATCH (source:Memory {name: relation.from}), (target:Memory {name: relation.to})
MERGE (source)-[:Memory {relationType: relation.relationType}]->(target)
"""

PRUNE_RELATIONS_QUERY = """
MATCH (source:Memory)-[r:Memory]->(target:Memory)
WHERE NOT [source.name, target.name, r.relationType] IN $relationKeys
DELETE r
"""

DELETE_ENTITIES_QUERY = """
MATCH (entity:Memory)
WHERE entity.name IN $entityNames
DETACH DELETE entity
RETURN count(entity) AS deletedCount
"""


def _project(entities: List[Entity], relations: List[Relation]) -> KnowledgeGraph:
    """Keep only the relations whose both endpoints are among the given entities."""
    names = {entity.name for entity in entities}
    return KnowledgeGraph(
        entities=entities,
        relations=[r for r in relations if r.from_entity in names and r.to_entity in names],
    )


def _matches(query_lower: str, field: str) -> bool:
    field_lower = field.lower()
    if not field_lower:
        return False
    return query_lower in field_lower or field_lower in query_lower


class KnowledgeGraphManager:
    """
    Core manager for knowledge graph operations against Neo4j.

    Args:
        executor: Query executor bound to the memory database
    """

    def __init__(self, executor: QueryExecutor):
        self.executor = executor

    async def load(self) -> KnowledgeGraph:
        """
        Load every entity and its outgoing relations in one read transaction.

        Returns:
            The complete knowledge graph; empty lists on an empty database
        """
        rows = await self.executor.execute(LOAD_GRAPH_QUERY)
        entities = []
        relations = []
        for row in rows:
            entities.append(Entity.model_validate(row["entity"]))
            relations.extend(Relation.model_validate(r) for r in row["relations"])
        logger.debug("Loaded %d entities and %d relations", len(entities), len(relations))
        return KnowledgeGraph(entities=entities, relations=relations)

    async def save(self, graph: KnowledgeGraph, tz: str = "UTC") -> None:
        """
        Write the graph back in a single write transaction.

        Entities are upserted by name. Relations are merged between existing
        endpoints; a relation whose endpoint entity does not exist is skipped.
        Stored relations that are no longer part of the graph are removed.

        Args:
            graph: The knowledge graph to save
            tz: Timezone used for the created/updated timestamps
        """
        relations = [r.model_dump(by_alias=True) for r in graph.relations]
        await self.executor.execute_many(
            [
                (UPSERT_ENTITIES_QUERY, {"entities": [e.to_store() for e in graph.entities], "tz": tz}),
                (UPSERT_RELATIONS_QUERY, {"relations": relations}),
                (PRUNE_RELATIONS_QUERY, {"relationKeys": [list(r.key) for r in graph.relations]}),
            ],
            write=True,
        )
        logger.debug("Saved %d entities and %d relations", len(graph.entities), len(graph.relations))

    async def create_entities(self, entities: List[Entity], tz: str = "UTC") -> List[Entity]:
        """
        Create multiple new entities in the knowledge graph.

        Args:
            entities: List of entities to create
            tz: Timezone used for the timestamps

        Returns:
            List of entities that were actually created (excludes existing names)
        """
        graph = await self.load()
        existing_names = {entity.name for entity in graph.entities}

        new_entities = []
        for entity in entities:
            if entity.name not in existing_names:
                new_entities.append(entity)
                existing_names.add(entity.name)

        graph.entities.extend(new_entities)
        await self.save(graph, tz)
        return new_entities

    async def create_relations(self, relations: List[Relation]) -> List[Relation]:
        """
        Create multiple new relations between entities.

        Returns:
            List of relations that were actually added (excludes duplicates)
        """
        graph = await self.load()
        existing = {r.key for r in graph.relations}

        new_relations = []
        for relation in relations:
            if relation.key not in existing:
                new_relations.append(relation)
                existing.add(relation.key)

        graph.relations.extend(new_relations)
        await self.save(graph)
        return new_relations

    async def add_observations(self, requests: List[AddObservationRequest], tz: str = "UTC") -> List[AddObservationResult]:
        """
        Add new observations to existing entities.

        Args:
            requests: List of observation addition requests
            tz: Timezone used for the updated timestamp

        Returns:
            Per request, the contents that were actually appended

        Raises:
            EntityNotFoundError: If an entity is not found
        """
        graph = await self.load()
        by_name = {entity.name: entity for entity in graph.entities}
        results = []

        for request in requests:
            entity = by_name.get(request.entity_name)
            if entity is None:
                raise EntityNotFoundError(request.entity_name)

            present = set(entity.observations)
            added = []
            for content in request.contents:
                if content not in present:
                    added.append(content)
                    present.add(content)

            entity.observations.extend(added)
            results.append(AddObservationResult(entity_name=request.entity_name, added_observations=added))

        await self.save(graph, tz)
        return results

    async def delete_observations(self, deletions: List[DeleteObservationRequest]) -> None:
        """Delete specific observations from entities; unknown entities and values are ignored."""
        graph = await self.load()
        by_name = {entity.name: entity for entity in graph.entities}

        for deletion in deletions:
            entity = by_name.get(deletion.entity_name)
            if entity:
                to_delete = set(deletion.observations)
                entity.observations = [obs for obs in entity.observations if obs not in to_delete]

        await self.save(graph)

    async def delete_entities(self, entity_names: List[str]) -> int:
        """
        Delete entities and, through DETACH DELETE, every relation touching them.

        Returns:
            Number of entities actually deleted
        """
        if not entity_names:
            logger.warning("No entity names provided for deletion")
            return 0

        rows = await self.executor.execute(DELETE_ENTITIES_QUERY, {"entityNames": list(entity_names)}, write=True)
        deleted = rows[0]["deletedCount"] if rows else 0
        logger.info("Deleted %d entities", deleted)
        if deleted != len(set(entity_names)):
            logger.warning("Requested to delete %d entities, but only deleted %d", len(set(entity_names)), deleted)
        return deleted

    async def delete_relations(self, relations: List[Relation]) -> None:
        """Delete relations equal, by (from, to, relationType), to any of the given ones."""
        graph = await self.load()
        to_delete = {r.key for r in relations}
        graph.relations = [r for r in graph.relations if r.key not in to_delete]
        await self.save(graph)

    async def read_graph(self) -> KnowledgeGraph:
        """Read the entire knowledge graph."""
        return await self.load()

    async def search_nodes(self, query: str) -> KnowledgeGraph:
        """
        Search for nodes in the knowledge graph.

        An entity matches when, ignoring case, the query contains its name,
        type or one of its observations, or one of those contains the query.

        Returns:
            Matching entities and the relations between them
        """
        graph = await self.load()
        query_lower = query.lower()

        filtered_entities = [
            entity
            for entity in graph.entities
            if _matches(query_lower, entity.name)
            or _matches(query_lower, entity.entity_type)
            or any(_matches(query_lower, obs) for obs in entity.observations)
        ]
        return _project(filtered_entities, graph.relations)

    async def open_nodes(self, names: List[str]) -> KnowledgeGraph:
        """Open specific nodes by name, with the relations between them."""
        graph = await self.load()
        names_set = set(names)
        return _project([e for e in graph.entities if e.name in names_set], graph.relations)


async def validate_database(driver: AsyncDriver, database: str) -> None:
    """
    Check connectivity and, for a non-default database, that it exists.

    Raises:
        StoreError: If the server is unreachable, lacks multi-database
            support, or does not have the database
    """
    try:
        await driver.verify_connectivity()
        if database == "neo4j":
            logger.info("Using default database: 'neo4j'")
            return

        logger.info("Checking that Neo4j supports multiple databases for '%s'", database)
        if not await driver.supports_multi_db():
            raise StoreError(
                "This Neo4j instance does not support multiple databases. "
                "Use the default 'neo4j' database or upgrade to Neo4j Enterprise."
            )
        records, _, _ = await driver.execute_query("SHOW DATABASES", database_="system")
        available: List[Any] = [record["name"] for record in records]
    except StoreError:
        raise
    except Exception as e:
        raise StoreError(f"Failed to validate database support: {e}", code=getattr(e, "code", None) or type(e).__name__) from e

    if database not in available:
        raise StoreError(
            f"Database '{database}' does not exist in this Neo4j instance. "
            f"Available databases: {', '.join(available)}",
            code="Neo.ClientError.Database.DatabaseNotFound",
        )
    logger.info("Database '%s' exists and will be used", database)


def graph_to_dict(graph: KnowledgeGraph) -> Dict[str, Any]:
    """Serialize a graph with the wire field names (``entityType``, ``from``...)."""
    return graph.model_dump(by_alias=True)
