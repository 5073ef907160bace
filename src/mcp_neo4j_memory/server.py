"""
FastMCP Server implementation for the Neo4j knowledge graph memory.

This module exposes the knowledge graph operations, guarded raw Cypher
execution and base ontology creation as MCP tools.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from neo4j import AsyncDriver, AsyncGraphDatabase

from .config import LOGGER_NAME, MemoryConfig, configure_logging, load_environment
from .errors import CollaboratorError, MemoryStoreError, StoreError
from .executor import QueryExecutor
from .llm import LLMClient
from .manager import KnowledgeGraphManager, graph_to_dict, validate_database
from .models import AddObservationRequest, DeleteObservationRequest, Entity, PolicyRefusal, Relation
from .ontology import OntologyBuilder
from .security import SecurityTokenGate

logger = logging.getLogger(LOGGER_NAME)


class MemoryServices:
    """Everything a tool call needs, wired once per process."""

    def __init__(self, config: MemoryConfig, driver: AsyncDriver):
        self.config = config
        self.driver = driver
        self.executor = QueryExecutor(driver, config.neo4j_database)
        self.manager = KnowledgeGraphManager(self.executor)
        self.gate = SecurityTokenGate(self.executor, config)
        self.ontology = OntologyBuilder(self.executor, self.gate, LLMClient.from_config(config))

    @classmethod
    async def connect(cls, config: MemoryConfig) -> "MemoryServices":
        """Open the driver and check that the configured database is usable."""
        driver = AsyncGraphDatabase.driver(config.neo4j_uri, auth=(config.neo4j_user, config.neo4j_password))
        try:
            await validate_database(driver, config.neo4j_database)
        except StoreError:
            await driver.close()
            raise
        return cls(config, driver)

    async def close(self) -> None:
        await self.driver.close()


_services: Optional[MemoryServices] = None


async def get_services() -> MemoryServices:
    """Build the services on first use."""
    global _services
    if _services is None:
        _services = await MemoryServices.connect(MemoryConfig.from_env())
    return _services


def _error_payload(title: str, error: Exception) -> Dict[str, Any]:
    return {"error": title, "message": str(error), "code": getattr(error, "code", None) or "UNKNOWN"}


# Create FastMCP server instance
mcp = FastMCP("mcp-neo4j-memory")


@mcp.tool
async def create_entities(entities: List[Dict[str, Any]], tz: str = "UTC") -> List[Dict[str, Any]]:
    """Create multiple new entities in the knowledge graph.

    Args:
        entities: List of entity objects with name, entityType, and observations
        tz: Optional timezone identifier (e.g. 'UTC') for the timestamps

    Returns:
        List of created entity objects (entities whose name already exists are skipped)
    """
    try:
        entity_objects = []
        for entity_data in entities:
            try:
                entity_objects.append(Entity.model_validate(entity_data))
            except Exception as e:
                raise ValueError(f"Invalid entity data: {e}")

        services = await get_services()
        result = await services.manager.create_entities(entity_objects, tz=tz)
        logger.debug("🛠️ create_entities added %d", len(result))
        return [e.model_dump(by_alias=True, exclude_none=True) for e in result]
    except Exception as e:
        raise RuntimeError(f"Failed to create entities: {e}")


@mcp.tool
async def create_relations(relations: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """Create multiple new relations between entities in the knowledge graph. Relations should be in active voice.

    Args:
        relations: List of relation objects with from, to, and relationType fields

    Returns:
        List of created relation objects
    """
    try:
        relation_objects = []
        for relation_data in relations:
            try:
                relation_objects.append(Relation.model_validate(relation_data))
            except Exception as e:
                raise ValueError(f"Invalid relation data: {e}")

        services = await get_services()
        result = await services.manager.create_relations(relation_objects)
        logger.debug("🛠️ create_relations added %d", len(result))
        return [r.model_dump(by_alias=True) for r in result]
    except Exception as e:
        raise RuntimeError(f"Failed to create relations: {e}")


@mcp.tool
async def add_observations(observations: List[Dict[str, Any]], tz: str = "UTC") -> List[Dict[str, Any]]:
    """Add new observations to existing entities in the knowledge graph.

    Args:
        observations: List of objects with entityName and contents (list of strings)
        tz: Optional timezone identifier (e.g. 'UTC') for the timestamps

    Returns:
        Per entity, the observations that were actually added
    """
    try:
        requests = []
        for obs_data in observations:
            if "entityName" not in obs_data or "contents" not in obs_data:
                raise ValueError("Missing required fields: entityName and contents")
            requests.append(AddObservationRequest.model_validate(obs_data))

        services = await get_services()
        result = await services.manager.add_observations(requests, tz=tz)
        logger.debug("🛠️ add_observations updated %d entities", len(result))
        return [r.model_dump(by_alias=True) for r in result]
    except Exception as e:
        raise RuntimeError(f"Failed to add observations: {e}")


@mcp.tool
async def delete_entities(entityNames: List[str]) -> str:
    """Delete multiple entities and their associated relations from the knowledge graph.

    Args:
        entityNames: List of entity names to delete

    Returns:
        Success message
    """
    try:
        if not entityNames or not isinstance(entityNames, list):
            raise ValueError("entityNames must be a non-empty list")

        services = await get_services()
        deleted = await services.manager.delete_entities(entityNames)
        logger.debug("🛠️ delete_entities removed %d", deleted)
        return "Entities deleted successfully"
    except Exception as e:
        raise RuntimeError(f"Failed to delete entities: {e}")


@mcp.tool
async def delete_observations(deletions: List[Dict[str, Any]]) -> str:
    """Delete specific observations from entities in the knowledge graph.

    Args:
        deletions: List of deletion objects with entityName and observations to delete

    Returns:
        Success message
    """
    try:
        deletion_objects = []
        for deletion_data in deletions:
            try:
                deletion_objects.append(DeleteObservationRequest.model_validate(deletion_data))
            except Exception as e:
                raise ValueError(f"Invalid deletion data: {e}")

        services = await get_services()
        await services.manager.delete_observations(deletion_objects)
        return "Observations deleted successfully"
    except Exception as e:
        raise RuntimeError(f"Failed to delete observations: {e}")


@mcp.tool
async def delete_relations(relations: List[Dict[str, str]]) -> str:
    """Delete multiple relations from the knowledge graph.

    Args:
        relations: List of relation objects with from, to, and relationType fields

    Returns:
        Success message
    """
    try:
        relation_objects = []
        for relation_data in relations:
            try:
                relation_objects.append(Relation.model_validate(relation_data))
            except Exception as e:
                raise ValueError(f"Invalid relation data: {e}")

        services = await get_services()
        await services.manager.delete_relations(relation_objects)
        return "Relations deleted successfully"
    except Exception as e:
        raise RuntimeError(f"Failed to delete relations: {e}")


@mcp.tool
async def read_graph() -> Dict[str, Any]:
    """Read the entire knowledge graph.

    Returns:
        Complete knowledge graph data
    """
    try:
        services = await get_services()
        return graph_to_dict(await services.manager.read_graph())
    except Exception as e:
        raise RuntimeError(f"Failed to read graph: {e}")


@mcp.tool
async def search_nodes(query: str) -> Dict[str, Any]:
    """Search for nodes in the knowledge graph based on a query.

    Args:
        query: The search query to match against entity names, types, and observation content

    Returns:
        Matching entities and the relations between them
    """
    try:
        if not query or not isinstance(query, str):
            raise ValueError("query must be a non-empty string")

        services = await get_services()
        return graph_to_dict(await services.manager.search_nodes(query))
    except Exception as e:
        raise RuntimeError(f"Failed to search nodes: {e}")


@mcp.tool
async def open_nodes(names: List[str]) -> Dict[str, Any]:
    """Open specific nodes in the knowledge graph by their names.

    Args:
        names: List of entity names to retrieve

    Returns:
        The named entities and the relations between them
    """
    try:
        if not names or not isinstance(names, list):
            raise ValueError("names must be a non-empty list")

        services = await get_services()
        return graph_to_dict(await services.manager.open_nodes(names))
    except Exception as e:
        raise RuntimeError(f"Failed to open nodes: {e}")


@mcp.tool
async def safe_cypher_query(
    query: str,
    securityNodeName: Optional[str] = None,
    params: Optional[Dict[str, Any]] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """Execute a Cypher query against the Neo4j database.

    Read-only queries need no security node. Write operations (CREATE, SET, DELETE,
    REMOVE, MERGE) need a valid security node name, unless the server runs in unsafe
    mode, or the user insists (force) and the server allows users to insist.

    Args:
        query: The Cypher query to execute
        securityNodeName: Security node authorizing a write query
        params: Optional query parameters
        force: True only when the user insists on running a write query

    Returns:
        Rows, row count and query type; or a structured refusal or error
    """
    try:
        services = await get_services()
        outcome = await services.gate.run(query, token_name=securityNodeName, params=params, user_insists=force)
        if isinstance(outcome, PolicyRefusal):
            return outcome.model_dump(by_alias=True)
        return outcome.model_dump(by_alias=True, exclude_none=True)
    except (MemoryStoreError, ValueError) as e:
        logger.error("Error executing Cypher query: %s", e)
        return _error_payload("Error executing Cypher query", e)


@mcp.tool
async def create_base_ontology(subject: str, parent: Optional[str] = None, force_it: bool = False) -> Dict[str, Any]:
    """Create a new Base Ontology in the knowledge graph with related entity types.

    Base Ontologies are prefixed with "(BO):" and their entities with "(OE):".

    Args:
        subject: The subject or name of the new Base Ontology
        parent: Optional parent Base Ontology of the new one
        force_it: Create even when a similar Base Ontology already exists

    Returns:
        Outcome of the creation, or a structured error
    """
    try:
        services = await get_services()
        result = await services.ontology.create_base_ontology(subject, parent=parent, force=force_it)
        return result.model_dump(by_alias=True, exclude_none=True)
    except (StoreError, CollaboratorError, ValueError) as e:
        logger.error("Error in create_base_ontology: %s", e)
        return _error_payload("Error creating Base Ontology", e)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Neo4j Knowledge Graph Memory MCP Server")
    parser.add_argument(
        "--database",
        type=str,
        help="Neo4j database name (overrides NEO4J_DATABASE env var)",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None):
    """Common entry point for the MCP server."""
    global _services
    load_environment()
    args = parse_args(argv)
    try:
        config = MemoryConfig.from_env(database=args.database)
        configure_logging(config)
        logger.info("Connecting to Neo4j at %s (database: '%s')", config.neo4j_uri, config.neo4j_database)
        _services = await MemoryServices.connect(config)
        logger.info("🧠 Starting Neo4j memory server")
        await mcp.run_async(transport="stdio")
    except (ValueError, StoreError) as e:
        logger.error("Initialization error: %s", e)
        if getattr(e, "code", None) == "ServiceUnavailable":
            logger.error("Unable to connect to Neo4j. Check that the database is running and the connection details are correct.")
        sys.exit(1)
    finally:
        if _services is not None:
            await _services.close()


def run_sync():
    """Synchronous entry point for the server."""
    asyncio.run(main())


if __name__ == "__main__":
    run_sync()
