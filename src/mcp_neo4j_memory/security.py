"""
Security token gate for raw Cypher execution.

A write query may only run when it is gated by a security token that the
server itself issued, unless the process configuration opens one of two
escape hatches: unsafe mode (writes always allowed, never gated) or the
user-insists flag (honored only when the configuration permits it). The
decision never depends on who the caller is.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Union

from .config import LOGGER_NAME, MemoryConfig
from .cypher import SECURITY_LABEL, contains_write_operations, wrap_with_security_check
from .errors import StoreError
from .executor import QueryExecutor
from .models import TOKEN_TTL, CypherQueryResult, PolicyRefusal, SecurityToken

logger = logging.getLogger(LOGGER_NAME)

ISSUE_TOKEN_QUERY = f"""
CREATE (s:{SECURITY_LABEL} {{
  name: $name,
  createdAt: datetime(),
  expiresAt: datetime() + duration({{minutes: $ttlMinutes}})
}})
RETURN s.name AS name, s.createdAt AS createdAt, s.expiresAt AS expiresAt
"""

REVOKE_TOKEN_QUERY = f"""
MATCH (s:{SECURITY_LABEL} {{name: $name}})
DELETE s
RETURN count(s) AS nodesDeleted
"""


def generate_token_name() -> str:
    """Unique, unguessable security token name."""
    return f"security-node-{int(time.time() * 1000)}-{uuid.uuid4()}"


class SecurityTokenGate:
    """
    Issues and revokes security tokens and decides whether a query may run.

    Args:
        executor: Executor used for token bookkeeping and gated queries
        config: Process configuration holding the escape-hatch switches
    """

    def __init__(self, executor: QueryExecutor, config: MemoryConfig):
        self.executor = executor
        self.allow_unsafe_queries = config.allow_unsafe_queries
        self.allow_user_insists = config.allow_user_insists

    async def issue(self, name: str) -> SecurityToken:
        """
        Create a security token that expires after five minutes.

        Raises:
            StoreError: If the token could not be written
        """
        rows = await self.executor.execute(
            ISSUE_TOKEN_QUERY,
            {"name": name, "ttlMinutes": int(TOKEN_TTL.total_seconds() // 60)},
            write=True,
        )
        if not rows:
            raise StoreError(f"Security token {name} was not created")
        logger.debug("Issued security token %s", name)
        return SecurityToken.model_validate(rows[0])

    async def revoke(self, name: str) -> int:
        """Delete a security token; revoking a missing token is not an error."""
        rows = await self.executor.execute(REVOKE_TOKEN_QUERY, {"name": name}, write=True)
        deleted = rows[0]["nodesDeleted"] if rows else 0
        logger.debug("Revoked security token %s (%d removed)", name, deleted)
        return deleted

    @staticmethod
    def gate(query: str, token_name: str) -> str:
        """Rewrite a query so it only has effects while the named token exists."""
        return wrap_with_security_check(query, token_name)

    @asynccontextmanager
    async def security_token(self) -> AsyncIterator[SecurityToken]:
        """Issue a fresh token for the enclosed block and always revoke it afterwards."""
        token = await self.issue(generate_token_name())
        try:
            yield token
        finally:
            await self.revoke(token.name)

    def authorize(self, query: str, token_name: Optional[str] = None, user_insists: bool = False) -> Optional[PolicyRefusal]:
        """
        Decide whether a query may run.

        Returns:
            None when the query may run, otherwise a PolicyRefusal describing
            every condition that was not met
        """
        if not contains_write_operations(query):
            return None
        insists = user_insists and self.allow_user_insists
        if token_name or self.allow_unsafe_queries or insists:
            return None

        unmet = ["no security node name was provided", "unsafe mode (NEO4J_UNSAFE_MEMORY_CYPHERS) is off"]
        if not user_insists:
            unmet.append("the user did not insist on execution")
        if not self.allow_user_insists:
            unmet.append("user-insists (ALLOW_CYPHER_QUERY_USER_INSISTS) is not permitted")
        return PolicyRefusal(
            security_node_name=token_name,
            allow_unsafe_queries=self.allow_unsafe_queries,
            user_insists=insists,
            user_insists_allowed=self.allow_user_insists,
            unmet_conditions=unmet,
        )

    async def run(
        self,
        query: str,
        token_name: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        user_insists: bool = False,
    ) -> Union[CypherQueryResult, PolicyRefusal]:
        """
        Execute a raw Cypher query under the write policy.

        Read queries run as-is in a read transaction. Write queries are
        refused, or run in a write transaction, gated by the token when one
        is given and unsafe mode is off. A write is reported as having no
        effect only when it returned no rows and its summary shows no updates.
        """
        refusal = self.authorize(query, token_name, user_insists)
        if refusal is not None:
            logger.warning("Refused unauthorized write query")
            return refusal

        is_write = contains_write_operations(query)
        gated = bool(is_write and token_name and not self.allow_unsafe_queries)
        prepared = self.gate(query, token_name) if gated else query
        if gated:
            logger.debug("Gated write query with security token %s", token_name)

        rows, counters = await self.executor.execute_counted(prepared, params or {}, write=is_write)

        message = None
        if is_write and not rows and not counters:
            if gated:
                message = "The write operation did not affect any records. This could be because the security node was not found or has expired."
            else:
                message = "The write operation completed but did not affect any records."
        return CypherQueryResult(
            result=rows,
            row_count=len(rows),
            query_type="write" if is_write else "read",
            message=message,
            counters=counters if is_write else None,
        )
