"""
Process configuration and logging setup.

Settings are read once from the environment (after ``.env`` has been loaded)
into an immutable :class:`MemoryConfig`; the write-policy switches it holds are
the only source of truth for whether unguarded writes may run.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

LOGGER_NAME = "mcp-neo4j-memory"
DEBUG_LOG_FILE = "mcp-semmem-debug.log"

logger = logging.getLogger(LOGGER_NAME)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


class MemoryConfig(BaseModel):
    """Immutable process-wide settings."""

    neo4j_uri: str
    neo4j_user: str
    neo4j_password: str
    neo4j_database: str = "neo4j"
    allow_unsafe_queries: bool = Field(False, description="NEO4J_UNSAFE_MEMORY_CYPHERS: writes always allowed, never gated")
    allow_user_insists: bool = Field(False, description="ALLOW_CYPHER_QUERY_USER_INSISTS: honor a caller's per-call force flag")
    llm_provider: str = "openai"
    llm_model: str = "gpt-4.1"
    llm_temperature: float = 0.2
    llm_max_tokens: int = 32768
    debug: bool = False
    log_dir: Path = Path("/tmp")

    class Config:
        frozen = True

    @property
    def llm_model_id(self) -> str:
        """Model identifier in litellm's ``provider/model`` form."""
        if "/" in self.llm_model:
            return self.llm_model
        return f"{self.llm_provider}/{self.llm_model}"

    @classmethod
    def from_env(cls, database: Optional[str] = None) -> "MemoryConfig":
        """
        Build the configuration from environment variables.

        Args:
            database: Optional database name overriding ``NEO4J_DATABASE``

        Raises:
            ValueError: If the Neo4j connection settings are missing
        """
        uri = os.getenv("NEO4J_URI", "").strip()
        if not uri:
            raise ValueError("NEO4J_URI environment variable is not defined")
        user = os.getenv("NEO4J_USER", "").strip()
        password = os.getenv("NEO4J_PASSWORD", "")
        if not user or not password:
            raise ValueError("NEO4J_USER or NEO4J_PASSWORD environment variables are not defined")

        debug_level = os.getenv("MCP_SEMMEM_DEBUG")
        return cls(
            neo4j_uri=uri,
            neo4j_user=user,
            neo4j_password=password,
            neo4j_database=(database or os.getenv("NEO4J_DATABASE", "")).strip() or "neo4j",
            allow_unsafe_queries=_env_flag("NEO4J_UNSAFE_MEMORY_CYPHERS"),
            allow_user_insists=_env_flag("ALLOW_CYPHER_QUERY_USER_INSISTS"),
            llm_provider=os.getenv("LLM_API_PROVIDER", "openai").strip() or "openai",
            llm_model=os.getenv("LLM_API_MODEL", "gpt-4.1").strip() or "gpt-4.1",
            llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", "32768")),
            debug=debug_level is not None,
            log_dir=Path(os.getenv("MCP_SEMMEM_LOG_DIR", "/tmp")),
        )


def load_environment() -> None:
    """Load ``.env`` into the process environment (path from ``MEMORY_ENV_PATH``)."""
    env_path = os.getenv("MEMORY_ENV_PATH", ".env")
    if not load_dotenv(env_path):
        logger.warning("⚠️ No .env file found at %s", env_path)


def configure_logging(config: MemoryConfig) -> None:
    """
    Route log output to stderr, and to a debug file when debugging is on.

    The stdio transport owns stdout, so nothing may be logged there.
    """
    logging.basicConfig(level=logging.INFO)
    if not config.debug:
        return

    logger.setLevel(logging.DEBUG)
    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.log_dir / DEBUG_LOG_FILE, encoding="utf-8")
    except OSError as e:
        logger.error("Unable to open debug log in %s: %s", config.log_dir, e)
        return
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] [%(module)s.%(funcName)s] %(message)s"))
    logger.addHandler(handler)
    logger.debug("Debug logging enabled, writing to %s", config.log_dir / DEBUG_LOG_FILE)
