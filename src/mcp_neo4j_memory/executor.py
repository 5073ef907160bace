"""
Query execution against Neo4j and normalization of result values.

Every call opens its own session with the matching access mode, runs its
statements in one explicit transaction and closes the session on every exit
path. Explicit transactions are never retried by the driver, so a failing
statement surfaces exactly once as a :class:`StoreError`.
"""

import datetime as dt
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from neo4j import READ_ACCESS, WRITE_ACCESS, AsyncDriver
from neo4j.exceptions import DriverError, Neo4jError
from neo4j.graph import Node, Path, Relationship
from neo4j.spatial import Point
from neo4j.time import Date, DateTime, Duration, Time

from .config import LOGGER_NAME
from .errors import StoreError

logger = logging.getLogger(LOGGER_NAME)

Statement = Tuple[str, Dict[str, Any]]
Row = Dict[str, Any]
Counters = Dict[str, int]


class ValueKind(str, Enum):
    """Kinds of values a Neo4j result column can hold."""

    NODE = "node"
    RELATIONSHIP = "relationship"
    PATH = "path"
    TEMPORAL = "temporal"
    SPATIAL = "spatial"
    LIST = "list"
    MAP = "map"
    PRIMITIVE = "primitive"


_NEO4J_TEMPORAL = (DateTime, Date, Time)
_NATIVE_TEMPORAL = (dt.datetime, dt.date, dt.time)
_PRIMITIVES = (str, bool, int, float, bytes, bytearray)


def value_kind(value: Any) -> ValueKind:
    """
    Classify a driver value.

    Raises:
        TypeError: If the value is of a type the normalizer does not know
    """
    if isinstance(value, Node):
        return ValueKind.NODE
    if isinstance(value, Relationship):
        return ValueKind.RELATIONSHIP
    if isinstance(value, Path):
        return ValueKind.PATH
    if isinstance(value, _NEO4J_TEMPORAL + _NATIVE_TEMPORAL + (Duration, dt.timedelta)):
        return ValueKind.TEMPORAL
    if isinstance(value, Point):
        return ValueKind.SPATIAL
    if isinstance(value, (list, tuple)):
        return ValueKind.LIST
    if isinstance(value, dict):
        return ValueKind.MAP
    if value is None or isinstance(value, _PRIMITIVES):
        return ValueKind.PRIMITIVE
    raise TypeError(f"Unsupported result value type: {type(value).__name__}")


def _properties(entity: Any) -> Dict[str, Any]:
    return {key: normalize_value(value) for key, value in entity.items()}


def _node(node: Node) -> Dict[str, Any]:
    return {**_properties(node), "_labels": sorted(node.labels)}


def _relationship(rel: Relationship) -> Dict[str, Any]:
    return {
        **_properties(rel),
        "_type": rel.type,
        "_startNodeId": rel.start_node.element_id if rel.start_node is not None else None,
        "_endNodeId": rel.end_node.element_id if rel.end_node is not None else None,
    }


def _temporal(value: Any) -> str:
    if isinstance(value, _NEO4J_TEMPORAL):
        return value.to_native().isoformat()
    if isinstance(value, Duration):
        return value.iso_format()
    if isinstance(value, dt.timedelta):
        return f"PT{value.total_seconds()}S"
    return value.isoformat()


def normalize_value(value: Any) -> Any:
    """Convert a Neo4j result value into plain, JSON-serializable Python data."""
    kind = value_kind(value)
    if kind is ValueKind.NODE:
        return _node(value)
    if kind is ValueKind.RELATIONSHIP:
        return _relationship(value)
    if kind is ValueKind.PATH:
        return {
            "segments": [
                {"start": _node(start), "relationship": _relationship(rel), "end": _node(end)}
                for start, rel, end in zip(value.nodes, value.relationships, value.nodes[1:])
            ]
        }
    if kind is ValueKind.TEMPORAL:
        return _temporal(value)
    if kind is ValueKind.SPATIAL:
        return {"srid": value.srid, "coordinates": list(value)}
    if kind is ValueKind.LIST:
        return [normalize_value(item) for item in value]
    if kind is ValueKind.MAP:
        return {key: normalize_value(item) for key, item in value.items()}
    if kind is ValueKind.PRIMITIVE:
        return value
    raise AssertionError(f"Unhandled value kind: {kind}")


def normalize_record(record: Any) -> Row:
    """Turn a driver record into an ordered ``{column: value}`` mapping."""
    return {key: normalize_value(record[key]) for key in record.keys()}


COUNTER_FIELDS = (
    "nodes_created",
    "nodes_deleted",
    "relationships_created",
    "relationships_deleted",
    "properties_set",
    "labels_added",
    "labels_removed",
)


def summary_counters(summary: Any) -> Counters:
    """Non-zero update counters of a result summary."""
    counters = getattr(summary, "counters", None)
    if counters is None:
        return {}
    values = {field: getattr(counters, field, 0) for field in COUNTER_FIELDS}
    return {field: value for field, value in values.items() if value}


class QueryExecutor:
    """
    Runs Cypher statements in correctly scoped units of work.

    Args:
        driver: Neo4j async driver
        database: Name of the database every session is opened against
    """

    def __init__(self, driver: AsyncDriver, database: str = "neo4j"):
        if driver is None:
            raise ValueError("Neo4j driver is required")
        self.driver = driver
        self.database = database

    async def execute(self, query: str, params: Optional[Dict[str, Any]] = None, write: bool = False) -> List[Row]:
        """Run one statement and return its normalized rows."""
        results = await self.execute_many([(query, params or {})], write=write)
        return results[0]

    async def execute_counted(
        self, query: str, params: Optional[Dict[str, Any]] = None, write: bool = False
    ) -> Tuple[List[Row], Counters]:
        """Run one statement and return its normalized rows with the update counters of its summary."""
        results = await self._execute([(query, params or {})], write)
        return results[0]

    async def execute_many(self, statements: Sequence[Statement], write: bool = False) -> List[List[Row]]:
        """
        Run several statements in a single transaction.

        Returns:
            One list of normalized rows per statement, in order

        Raises:
            StoreError: On any driver or server failure; nothing is retried
        """
        return [rows for rows, _ in await self._execute(statements, write)]

    async def _execute(self, statements: Sequence[Statement], write: bool) -> List[Tuple[List[Row], Counters]]:
        access_mode = WRITE_ACCESS if write else READ_ACCESS
        logger.debug("Executing %d %s statement(s) on '%s'", len(statements), "write" if write else "read", self.database)
        try:
            async with self.driver.session(database=self.database, default_access_mode=access_mode) as session:
                tx = await session.begin_transaction()
                async with tx:
                    results = [await self._run(tx, query, params) for query, params in statements]
                    await tx.commit()
                return results
        except Neo4jError as e:
            logger.error("Neo4j error on database '%s': %s (%s)", self.database, e.message, e.code)
            if e.code == "Neo.ClientError.Database.DatabaseNotFound":
                logger.error("Database '%s' does not exist. Check the Neo4j installation and configuration.", self.database)
            raise StoreError(e.message or str(e), code=e.code) from e
        except DriverError as e:
            logger.error("Neo4j driver error on database '%s': %s", self.database, e)
            raise StoreError(str(e), code=type(e).__name__) from e

    @staticmethod
    async def _run(tx: Any, query: str, params: Dict[str, Any]) -> Tuple[List[Row], Counters]:
        result = await tx.run(query, params)
        rows = [normalize_record(record) async for record in result]
        summary = await result.consume()
        return rows, summary_counters(summary)
