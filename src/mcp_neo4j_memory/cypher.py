"""
Cypher helpers: write-operation detection and security-token gating.

Detection is keyword based on purpose. Any standalone ``CREATE``, ``SET``,
``DELETE``, ``REMOVE`` or ``MERGE`` token counts as a write, even inside a
string literal or comment; over-refusing a read is acceptable, missing a write
is not.
"""

import re

WRITE_OPERATORS = ("CREATE", "SET", "DELETE", "REMOVE", "MERGE")

_WRITE_PATTERN = re.compile(r"\b(" + "|".join(WRITE_OPERATORS) + r")\b", re.IGNORECASE)

_UNGATEABLE_PATTERN = re.compile(r"\bUNION\b|^\s*USE\b", re.IGNORECASE)

# string literals, quoted identifiers and comments, scanned left to right
_LITERAL_PATTERN = re.compile(
    r"'(?:[^'\\]|\\.)*'"
    r'|"(?:[^"\\]|\\.)*"'
    r"|`[^`]*`"
    r"|//[^\n]*"
    r"|/\*.*?\*/",
    re.DOTALL,
)

SECURITY_LABEL = "SecurityNode"
GATE_VARIABLE = "_gate_token"


def contains_write_operations(query: str) -> bool:
    """Return True if the query contains a write operator as a standalone word."""
    return bool(_WRITE_PATTERN.search(query or ""))


def strip_literals(query: str) -> str:
    """Blank out string literals, quoted identifiers and comments, leaving only clause text."""
    return _LITERAL_PATTERN.sub(" ", query or "")


def cypher_string(value: str) -> str:
    """Quote a value as a Cypher string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def wrap_with_security_check(query: str, token_name: str) -> str:
    """
    Make a query depend on the existence of an unexpired security token.

    The token match is carried into the caller's query with ``WITH``; when no
    such token exists the remaining clauses run over zero rows, so the
    rewritten query has no side effects.

    Raises:
        ValueError: If the query has a ``UNION`` (only its first part would be
            gated) or starts with ``USE``
    """
    if _UNGATEABLE_PATTERN.search(strip_literals(query)):
        raise ValueError("Queries with UNION or a leading USE clause cannot be gated by a security node")
    return (
        f"MATCH ({GATE_VARIABLE}:{SECURITY_LABEL} {{name: {cypher_string(token_name)}}})\n"
        f"WHERE {GATE_VARIABLE}.expiresAt > datetime()\n"
        f"WITH {GATE_VARIABLE}\n"
        f"{query.strip()}"
    )
