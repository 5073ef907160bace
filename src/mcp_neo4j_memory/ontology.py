"""
Base ontology workflow.

Builds a generated subgraph for a subject in a fixed sequence of steps:

    CHECK_EXISTS -> REFUSE
                 -> ISSUE_TOKEN -> GENERATE_STRUCTURE -> GENERATE_WRITE_STATEMENTS
                    -> EXECUTE_STATEMENTS -> LINK_PARENT -> LINK_RELATED -> REVOKE_TOKEN

Everything the text generator returns is untrusted: structures are validated
against pydantic models, and every generated statement is checked and then
gated with the workflow's own security token before it runs. Statements that
already ran are not rolled back when a later one fails; each is gated and
safe to re-run.
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .config import LOGGER_NAME
from .cypher import SECURITY_LABEL, contains_write_operations, strip_literals
from .errors import CollaboratorError, StoreError
from .executor import QueryExecutor
from .llm import TextGenerator
from .models import (
    GeneratedStatement,
    GeneratedStatements,
    OntologyConnection,
    OntologyResult,
    OntologyStructure,
    SecurityToken,
)
from .security import SecurityTokenGate

logger = logging.getLogger(LOGGER_NAME)

CONNECTION_CONFIDENCE_THRESHOLD = 0.7
BASE_ONTOLOGY_PREFIX = "(BO): "
ONTOLOGY_ENTITY_PREFIX = "(OE): "

_FORBIDDEN_IN_GENERATED = re.compile(r"\b(DELETE|DETACH|REMOVE|DROP|CALL|UNION|LOAD\s+CSV)\b", re.IGNORECASE)


def _ontology_predicate(var: str, param: str) -> str:
    subject, name = f"coalesce({var}.subject, '')", f"coalesce({var}.name, '')"
    return f"({subject} = ${param} OR {name} = ${param} OR {name} = '{BASE_ONTOLOGY_PREFIX}' + ${param})"


LIST_ONTOLOGIES_QUERY = "MATCH (bo:BaseOntology) RETURN bo"

OTHER_ONTOLOGIES_QUERY = f"""
MATCH (bo:BaseOntology)
WHERE NOT {_ontology_predicate("bo", "subject")}
RETURN bo
"""

FIND_ONTOLOGY_QUERY = f"""
MATCH (bo:BaseOntology)
WHERE {_ontology_predicate("bo", "subject")}
RETURN bo
LIMIT 1
"""

LINK_PARENT_QUERY = f"""
MATCH (parent:BaseOntology) WHERE {_ontology_predicate("parent", "parent")}
MATCH (child:BaseOntology) WHERE {_ontology_predicate("child", "subject")}
MERGE (parent)-[:PARENT_OF]->(child)
RETURN count(*) AS linked
"""

_LINK_OTHER = f"""
MATCH (other:BaseOntology) WHERE {_ontology_predicate("other", "other")}
MATCH (created:BaseOntology) WHERE {_ontology_predicate("created", "subject")}
"""

LINK_RELATED_QUERIES = {
    "parent": _LINK_OTHER + "MERGE (other)-[:PARENT_OF]->(created)\nRETURN count(*) AS linked",
    "child": _LINK_OTHER + "MERGE (other)-[:CHILD_OF]->(created)\nRETURN count(*) AS linked",
    "related": _LINK_OTHER + "MERGE (other)-[:RELATED_TO]->(created)\nMERGE (created)-[:RELATED_TO]->(other)\nRETURN count(*) AS linked",
}

EXISTS_PROMPT = """You decide whether a subject is already covered by an existing Base Ontology in a knowledge graph.
Judge semantic similarity, not only exact names ("Machine Learning" may be covered by "Artificial Intelligence").

Subject: "{subject}"

Answer with JSON only:
{{"isRepresented": true|false, "representedBy": ["<ontology name>"] or null, "confidence": 0.0-1.0, "reasoning": "<short explanation>"}}"""

STRUCTURE_PROMPT = """Design a Base Semantic Ontology for "{subject}": its key entities, the relationships between them,
and a parent/child hierarchy.

Answer with JSON only:
{{"name": "{subject}", "description": "<description>",
  "entities": [{{"name": "<entity>", "type": "<entity type>", "description": "<description>"}}],
  "relationships": [{{"from": "<entity>", "type": "<RELATIONSHIP_TYPE>", "to": "<entity>", "description": "<description>"}}],
  "hierarchy": [{{"parent": "<entity>", "children": ["<entity>"]}}]}}"""

STATEMENTS_PROMPT = """Write the Cypher statements that create the ontology given in the context.

Rules:
- Only MATCH, CREATE, MERGE, SET, WITH, UNWIND and RETURN clauses. No DELETE, REMOVE, DROP or CALL.
- One BaseOntology node labelled `BaseOntology` with properties name ("{bo_prefix}" + $subject), subject ($subject),
  type ("BaseOntology"), description, createdAt (datetime()) and structure ($ontologyStructureJson).
- One `OntologyEntity` node per entity, its name prefixed with "{oe_prefix}".
- `HAS_ENTITY` relationships from the BaseOntology node to every OntologyEntity node.
- Relationships between entities use the types from the ontology; hierarchy uses PARENT_OF.
- Use the parameters $subject and $ontologyStructureJson for dynamic values.

Answer with JSON only:
{{"queries": [{{"description": "<what it does>", "query": "<cypher>"}}]}}"""

CONNECTIONS_PROMPT = """Decide how the new ontology "{subject}" relates to the existing ontologies in the context.
"parent" means the existing ontology is the broader one, "child" means it is the narrower one.

Answer with JSON only:
{{"connections": [{{"existingOntology": "<ontology name>", "relationship": "parent"|"child"|"related", "confidence": 0.0-1.0, "reasoning": "<short explanation>"}}]}}"""


class OntologyStep(str, Enum):
    CHECK_EXISTS = "CHECK_EXISTS"
    REFUSE = "REFUSE"
    ISSUE_TOKEN = "ISSUE_TOKEN"
    GENERATE_STRUCTURE = "GENERATE_STRUCTURE"
    GENERATE_WRITE_STATEMENTS = "GENERATE_WRITE_STATEMENTS"
    EXECUTE_STATEMENTS = "EXECUTE_STATEMENTS"
    LINK_PARENT = "LINK_PARENT"
    LINK_RELATED = "LINK_RELATED"
    REVOKE_TOKEN = "REVOKE_TOKEN"


class ExistenceCheck(BaseModel):
    exists: bool = False
    matches: List[Dict[str, Any]] = Field(default_factory=list)
    confidence: Optional[float] = None
    reasoning: Optional[str] = None


def _ontology_names(node: Dict[str, Any]) -> set:
    names = {node.get("name"), node.get("subject")}
    return {name for name in names if name}


def validate_statement(statement: GeneratedStatement) -> GeneratedStatement:
    """
    Reject generated statements that do more than create ontology data.

    Raises:
        CollaboratorError: If the statement is not a write, is destructive or
            procedural, or touches security tokens
    """
    query = statement.query
    if not contains_write_operations(query):
        raise CollaboratorError(f"Generated statement is not a write: {statement.description!r}")
    forbidden = _FORBIDDEN_IN_GENERATED.search(strip_literals(query))
    if forbidden:
        raise CollaboratorError(f"Generated statement uses forbidden clause {forbidden.group(1).upper()}: {statement.description!r}")
    if SECURITY_LABEL.lower() in query.lower():
        raise CollaboratorError(f"Generated statement references security tokens: {statement.description!r}")
    return statement


class OntologyBuilder:
    """
    Runs the base ontology workflow.

    Args:
        executor: Executor for reads and gated writes
        gate: Security token gate owning the workflow token
        llm: Text generator producing structures and statements
    """

    def __init__(self, executor: QueryExecutor, gate: SecurityTokenGate, llm: TextGenerator):
        self.executor = executor
        self.gate = gate
        self.llm = llm

    async def create_base_ontology(self, subject: str, parent: Optional[str] = None, force: bool = False) -> OntologyResult:
        """
        Create a Base Ontology for a subject unless one already covers it.

        Args:
            subject: Subject of the new ontology
            parent: Optional existing ontology to hang the new one under
            force: Create even when an existing ontology covers the subject

        Raises:
            StoreError: If a mandatory store step fails
            CollaboratorError: If a mandatory generation step fails
        """
        if not subject or not subject.strip():
            return OntologyResult(success=False, message="Missing required parameter: subject")
        subject = subject.strip()

        steps = [OntologyStep.CHECK_EXISTS]
        check = await self.check_exists(subject)
        if check.exists and not force:
            steps.append(OntologyStep.REFUSE)
            logger.info("Subject '%s' is already represented by an existing Base Ontology", subject)
            return OntologyResult(
                success=False,
                message=f"The subject '{subject}' is already represented by an existing Base Ontology.",
                base_ontologies=check.matches,
                steps=[step.value for step in steps],
            )

        steps.append(OntologyStep.ISSUE_TOKEN)
        async with self.gate.security_token() as token:
            steps.append(OntologyStep.GENERATE_STRUCTURE)
            structure = await self.generate_structure(subject)

            steps.append(OntologyStep.GENERATE_WRITE_STATEMENTS)
            statements = await self.generate_statements(structure)

            steps.append(OntologyStep.EXECUTE_STATEMENTS)
            results = await self.execute_statements(statements, subject, structure, token)

            parent_linked = False
            if parent and parent.strip() and parent.strip() != subject:
                steps.append(OntologyStep.LINK_PARENT)
                parent_linked = await self.link_parent(subject, parent.strip(), token)

            steps.append(OntologyStep.LINK_RELATED)
            await self.link_related(subject, token)
        steps.append(OntologyStep.REVOKE_TOKEN)

        return OntologyResult(
            success=True,
            message=(
                f"Created Base Ontology '{subject}' with {len(structure.entities)} entities "
                f"and {len(structure.relationships)} relationships"
            ),
            structure=structure,
            execution_results=results,
            parent_linked=parent_linked,
            steps=[step.value for step in steps],
        )

    async def check_exists(self, subject: str) -> ExistenceCheck:
        """Ask the text generator whether an existing Base Ontology covers the subject."""
        rows = await self.executor.execute(LIST_ONTOLOGIES_QUERY)
        if not rows:
            return ExistenceCheck()

        response = await self.llm.generate(EXISTS_PROMPT.format(subject=subject), {"existingOntologies": rows})
        data = response.data if isinstance(response.data, dict) else {}
        represented_by = data.get("representedBy") or []
        if not isinstance(represented_by, list):
            represented_by = [represented_by]
        wanted = {str(name) for name in represented_by}
        return ExistenceCheck(
            exists=bool(data.get("isRepresented", False)),
            matches=[row["bo"] for row in rows if _ontology_names(row["bo"]) & wanted],
            confidence=data.get("confidence"),
            reasoning=data.get("reasoning"),
        )

    async def generate_structure(self, subject: str) -> OntologyStructure:
        """Generated ontology structure, or the default one when the output is unusable."""
        response = await self.llm.generate(STRUCTURE_PROMPT.format(subject=subject))
        if isinstance(response.data, dict):
            try:
                return OntologyStructure.model_validate(response.data)
            except ValidationError as e:
                logger.warning("Generated ontology structure is invalid, using default: %s", e)
        else:
            logger.warning("Generated ontology structure is not JSON, using default")
        return OntologyStructure.default_for(subject)

    async def generate_statements(self, structure: OntologyStructure) -> List[GeneratedStatement]:
        """
        Generated write statements for a structure, each validated.

        Raises:
            CollaboratorError: If the output cannot be parsed or a statement is rejected
        """
        response = await self.llm.generate(
            STATEMENTS_PROMPT.format(bo_prefix=BASE_ONTOLOGY_PREFIX, oe_prefix=ONTOLOGY_ENTITY_PREFIX),
            {"ontologyStructure": structure.model_dump(by_alias=True)},
        )
        if not isinstance(response.data, dict):
            raise CollaboratorError("Generated Cypher statements could not be parsed")
        try:
            statements = GeneratedStatements.model_validate(response.data).queries
        except ValidationError as e:
            raise CollaboratorError(f"Generated Cypher statements are invalid: {e}") from e
        if not statements:
            raise CollaboratorError("No Cypher statements were generated")
        return [validate_statement(statement) for statement in statements]

    async def execute_statements(
        self,
        statements: List[GeneratedStatement],
        subject: str,
        structure: OntologyStructure,
        token: SecurityToken,
    ) -> List[Dict[str, Any]]:
        """Run every statement gated with the workflow token, in order."""
        params = {"subject": subject, "ontologyStructureJson": structure.model_dump_json(by_alias=True)}
        results = []
        for statement in statements:
            logger.debug("Executing generated statement: %s", statement.description)
            rows = await self.executor.execute(self.gate.gate(statement.query, token.name), params, write=True)
            results.append({"description": statement.description, "result": rows})
        return results

    async def link_parent(self, subject: str, parent: str, token: SecurityToken) -> bool:
        """Hang the new ontology under an existing parent ontology, if the parent exists."""
        if not await self.executor.execute(FIND_ONTOLOGY_QUERY, {"subject": parent}):
            logger.warning("Parent ontology '%s' not found, not linking", parent)
            return False
        rows = await self.executor.execute(
            self.gate.gate(LINK_PARENT_QUERY, token.name),
            {"subject": subject, "parent": parent},
            write=True,
        )
        return bool(rows and rows[0].get("linked"))

    async def link_related(self, subject: str, token: SecurityToken) -> int:
        """
        Connect the new ontology to related ones; failures are logged, never raised.

        Returns:
            Number of connections written
        """
        linked = 0
        try:
            rows = await self.executor.execute(OTHER_ONTOLOGIES_QUERY, {"subject": subject})
            if not rows:
                return 0
            known = set()
            for row in rows:
                known |= _ontology_names(row["bo"])

            response = await self.llm.generate(CONNECTIONS_PROMPT.format(subject=subject), {"existingOntologies": rows})
            raw = response.data.get("connections", []) if isinstance(response.data, dict) else []
            for item in raw if isinstance(raw, list) else []:
                try:
                    connection = OntologyConnection.model_validate(item)
                except ValidationError:
                    logger.debug("Skipping malformed ontology connection: %r", item)
                    continue
                if connection.confidence <= CONNECTION_CONFIDENCE_THRESHOLD:
                    continue
                if connection.existing_ontology not in known:
                    logger.debug("Skipping connection to unknown ontology '%s'", connection.existing_ontology)
                    continue
                await self.executor.execute(
                    self.gate.gate(LINK_RELATED_QUERIES[connection.relationship], token.name),
                    {"subject": subject, "other": connection.existing_ontology},
                    write=True,
                )
                linked += 1
        except (CollaboratorError, StoreError) as e:
            logger.error("Error creating ontology connections: %s", e)
        return linked
