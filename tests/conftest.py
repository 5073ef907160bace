"""Shared fixtures for the memory store tests."""

import copy
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from mcp_neo4j_memory.config import MemoryConfig
from mcp_neo4j_memory.manager import (
    DELETE_ENTITIES_QUERY,
    LOAD_GRAPH_QUERY,
    PRUNE_RELATIONS_QUERY,
    UPSERT_ENTITIES_QUERY,
    UPSERT_RELATIONS_QUERY,
    KnowledgeGraphManager,
)


class InMemoryGraphExecutor:
    """
    Stand-in for QueryExecutor that understands the manager's statements.

    Nodes and relations live in plain Python containers; each statement is
    applied with the same semantics the Cypher has against Neo4j.
    """

    def __init__(self):
        self.nodes: Dict[str, Dict[str, Any]] = {}
        self.relations: List[Tuple[str, str, str]] = []
        self.calls: List[Tuple[List[str], bool]] = []
        self._clock = 0

    async def execute(self, query: str, params: Optional[Dict[str, Any]] = None, write: bool = False) -> List[Dict[str, Any]]:
        return (await self.execute_many([(query, params or {})], write=write))[0]

    async def execute_many(self, statements: Sequence[Tuple[str, Dict[str, Any]]], write: bool = False):
        self.calls.append(([query for query, _ in statements], write))
        return [self._apply(query, params) for query, params in statements]

    @property
    def writes(self) -> List[Tuple[List[str], bool]]:
        return [call for call in self.calls if call[1]]

    def _now(self) -> str:
        self._clock += 1
        return f"2024-01-01T00:00:{self._clock:02d}+00:00"

    def _apply(self, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        if query == LOAD_GRAPH_QUERY:
            rows = []
            for name, props in self.nodes.items():
                if props.get("name") is None:
                    continue
                outgoing = [
                    {"from": src, "to": dst, "relationType": rel_type}
                    for src, dst, rel_type in self.relations
                    if src == name and self.nodes.get(dst, {}).get("name") is not None
                ]
                rows.append({"entity": {**copy.deepcopy(props), "_labels": ["Memory"]}, "relations": outgoing})
            return rows

        if query == UPSERT_ENTITIES_QUERY:
            now = self._now()
            for entity in params["entities"]:
                node = self.nodes.get(entity["name"])
                if node is None:
                    self.nodes[entity["name"]] = {**copy.deepcopy(entity), "createdAt": now, "updatedAt": now}
                else:
                    node.update(copy.deepcopy(entity))
                    node["updatedAt"] = now
            return []

        if query == UPSERT_RELATIONS_QUERY:
            for relation in params["relations"]:
                key = (relation["from"], relation["to"], relation["relationType"])
                if key[0] in self.nodes and key[1] in self.nodes and key not in self.relations:
                    self.relations.append(key)
            return []

        if query == PRUNE_RELATIONS_QUERY:
            keep = {tuple(key) for key in params["relationKeys"]}
            self.relations = [key for key in self.relations if key in keep]
            return []

        if query == DELETE_ENTITIES_QUERY:
            names = [name for name in params["entityNames"] if name in self.nodes]
            for name in names:
                del self.nodes[name]
            self.relations = [key for key in self.relations if key[0] not in names and key[1] not in names]
            return [{"deletedCount": len(names)}]

        raise AssertionError(f"Unexpected query: {query}")


@pytest.fixture
def graph_executor():
    return InMemoryGraphExecutor()


@pytest.fixture
def manager(graph_executor):
    return KnowledgeGraphManager(graph_executor)


@pytest.fixture
def config():
    return MemoryConfig(neo4j_uri="bolt://localhost:7687", neo4j_user="neo4j", neo4j_password="secret")
