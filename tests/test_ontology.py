import json

import pytest

from mcp_neo4j_memory.errors import CollaboratorError, StoreError
from mcp_neo4j_memory.llm import LLMResponse, extract_json
from mcp_neo4j_memory.models import GeneratedStatement
from mcp_neo4j_memory.ontology import (
    FIND_ONTOLOGY_QUERY,
    LINK_PARENT_QUERY,
    LIST_ONTOLOGIES_QUERY,
    OTHER_ONTOLOGIES_QUERY,
    OntologyBuilder,
    validate_statement,
)
from mcp_neo4j_memory.security import ISSUE_TOKEN_QUERY, REVOKE_TOKEN_QUERY, SecurityTokenGate

STRUCTURE = {
    "name": "Physics",
    "description": "The study of matter and energy",
    "entities": [
        {"name": "Force", "type": "Concept", "description": "An interaction"},
        {"name": "Mass", "type": "Property", "description": "Amount of matter"},
    ],
    "relationships": [{"from": "Force", "to": "Mass", "type": "ACTS_ON", "description": "Forces act on masses"}],
    "hierarchy": [],
}

STATEMENTS = {
    "queries": [
        {
            "description": "Create the base ontology",
            "query": "CREATE (bo:BaseOntology {name: '(BO): ' + $subject, subject: $subject, structure: $ontologyStructureJson})",
        },
        {
            "description": "Create the entities",
            "query": "MATCH (bo:BaseOntology {subject: $subject}) MERGE (bo)-[:HAS_ENTITY]->(:OntologyEntity {name: '(OE): Force'})",
        },
    ]
}


class ScriptedStore:
    """Executor double answering the ontology workflow's queries."""

    def __init__(self, ontologies=None, parent_exists=False, fail_on=None):
        self.ontologies = ontologies or []
        self.parent_exists = parent_exists
        self.fail_on = fail_on
        self.calls = []
        self.live_tokens = set()

    @property
    def issued(self):
        return [params["name"] for query, params, _ in self.calls if query == ISSUE_TOKEN_QUERY]

    @property
    def revoked(self):
        return [params["name"] for query, params, _ in self.calls if query == REVOKE_TOKEN_QUERY]

    @property
    def gated(self):
        return [(query, params) for query, params, write in self.calls if write and query.startswith("MATCH (_gate_token")]

    async def execute(self, query, params=None, write=False):
        params = params or {}
        self.calls.append((query, params, write))
        if query == ISSUE_TOKEN_QUERY:
            self.live_tokens.add(params["name"])
            return [{"name": params["name"], "createdAt": "2024-01-01T00:00:00Z", "expiresAt": "2024-01-01T00:05:00Z"}]
        if query == REVOKE_TOKEN_QUERY:
            removed = int(params["name"] in self.live_tokens)
            self.live_tokens.discard(params["name"])
            return [{"nodesDeleted": removed}]
        if query == LIST_ONTOLOGIES_QUERY:
            return [{"bo": bo} for bo in self.ontologies]
        if query == OTHER_ONTOLOGIES_QUERY:
            return [{"bo": bo} for bo in self.ontologies if bo.get("subject") != params["subject"]]
        if query == FIND_ONTOLOGY_QUERY:
            return [{"bo": {"subject": params["subject"]}}] if self.parent_exists else []
        if self.fail_on and self.fail_on in query:
            raise StoreError("Invalid input", code="Neo.ClientError.Statement.SyntaxError")
        return [{"linked": 1}]


class ScriptedLLM:
    """Text generator returning queued responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    async def generate(self, prompt, context=None):
        self.prompts.append((prompt, context))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        text = item if isinstance(item, str) else json.dumps(item)
        return LLMResponse(text=text, data=extract_json(text))


def _builder(store, llm, config):
    return OntologyBuilder(store, SecurityTokenGate(store, config), llm)


@pytest.mark.asyncio
async def test_existing_subject_is_refused_without_a_token(config):
    store = ScriptedStore(ontologies=[{"name": "(BO): Physics", "subject": "Physics"}])
    llm = ScriptedLLM({"isRepresented": True, "representedBy": ["(BO): Physics"], "confidence": 0.9})

    result = await _builder(store, llm, config).create_base_ontology("Physics")

    assert result.success is False
    assert "already represented" in result.message
    assert result.base_ontologies == [{"name": "(BO): Physics", "subject": "Physics"}]
    assert result.steps == ["CHECK_EXISTS", "REFUSE"]
    assert store.issued == []
    assert store.gated == []


@pytest.mark.asyncio
async def test_creates_ontology_with_gated_statements(config):
    store = ScriptedStore()
    llm = ScriptedLLM(STRUCTURE, STATEMENTS)

    result = await _builder(store, llm, config).create_base_ontology("Physics")

    assert result.success is True
    assert result.steps == [
        "CHECK_EXISTS",
        "ISSUE_TOKEN",
        "GENERATE_STRUCTURE",
        "GENERATE_WRITE_STATEMENTS",
        "EXECUTE_STATEMENTS",
        "LINK_RELATED",
        "REVOKE_TOKEN",
    ]
    assert result.structure.name == "Physics"
    assert len(result.execution_results) == 2

    token = store.issued[0]
    assert store.revoked == [token]
    assert store.live_tokens == set()
    assert len(store.gated) == 2
    for query, params in store.gated:
        assert f"{{name: '{token}'}}" in query
        assert params["subject"] == "Physics"
        assert json.loads(params["ontologyStructureJson"])["name"] == "Physics"

    statements_context = llm.prompts[1][1]
    assert statements_context["ontologyStructure"]["relationships"][0]["from"] == "Force"


@pytest.mark.asyncio
async def test_force_creates_even_when_represented(config):
    store = ScriptedStore(ontologies=[{"name": "(BO): Physics", "subject": "Physics"}])
    llm = ScriptedLLM({"isRepresented": True, "representedBy": ["Physics"]}, STRUCTURE, STATEMENTS)

    result = await _builder(store, llm, config).create_base_ontology("Physics", force=True)

    assert result.success is True
    assert "REFUSE" not in result.steps
    assert len(store.gated) == 2


@pytest.mark.asyncio
async def test_unusable_structure_falls_back_to_default(config):
    store = ScriptedStore()
    llm = ScriptedLLM("I would rather not.", STATEMENTS)

    result = await _builder(store, llm, config).create_base_ontology("Chemistry")

    assert result.success is True
    assert result.structure.name == "(BO): Chemistry"
    assert [e.name for e in result.structure.entities] == ["(OE): Concept", "(OE): Property", "(OE): Relationship"]


@pytest.mark.asyncio
async def test_unparseable_statements_fail_and_revoke_token(config):
    store = ScriptedStore()
    llm = ScriptedLLM(STRUCTURE, "Here you go: CREATE (n)")

    with pytest.raises(CollaboratorError):
        await _builder(store, llm, config).create_base_ontology("Physics")

    assert store.gated == []
    assert store.revoked == store.issued
    assert store.live_tokens == set()


@pytest.mark.asyncio
async def test_destructive_statement_is_rejected_before_anything_runs(config):
    store = ScriptedStore()
    statements = {
        "queries": [
            STATEMENTS["queries"][0],
            {"description": "Clean up", "query": "MATCH (n) DETACH DELETE n"},
        ]
    }
    llm = ScriptedLLM(STRUCTURE, statements)

    with pytest.raises(CollaboratorError, match="DETACH"):
        await _builder(store, llm, config).create_base_ontology("Physics")

    assert store.gated == []
    assert store.live_tokens == set()


@pytest.mark.asyncio
async def test_store_failure_keeps_earlier_statements_and_revokes(config):
    store = ScriptedStore(fail_on="HAS_ENTITY")
    llm = ScriptedLLM(STRUCTURE, STATEMENTS)

    with pytest.raises(StoreError):
        await _builder(store, llm, config).create_base_ontology("Physics")

    gated_queries = [query for query, _ in store.gated]
    assert len(gated_queries) == 2
    assert "CREATE (bo:BaseOntology" in gated_queries[0]
    assert store.revoked == store.issued
    assert store.live_tokens == set()


@pytest.mark.asyncio
async def test_parent_is_linked_when_it_exists(config):
    store = ScriptedStore(parent_exists=True)
    llm = ScriptedLLM(STRUCTURE, STATEMENTS)

    result = await _builder(store, llm, config).create_base_ontology("Quantum Mechanics", parent="Physics")

    assert result.parent_linked is True
    assert "LINK_PARENT" in result.steps
    link_calls = [params for query, params in store.gated if query.endswith(LINK_PARENT_QUERY.strip())]
    assert link_calls == [{"subject": "Quantum Mechanics", "parent": "Physics"}]


@pytest.mark.asyncio
async def test_missing_parent_is_not_linked(config):
    store = ScriptedStore(parent_exists=False)
    llm = ScriptedLLM(STRUCTURE, STATEMENTS)

    result = await _builder(store, llm, config).create_base_ontology("Quantum Mechanics", parent="Physics")

    assert result.success is True
    assert result.parent_linked is False
    assert len(store.gated) == 2


@pytest.mark.asyncio
async def test_related_links_respect_confidence_and_known_names(config):
    existing = [{"name": "(BO): Mathematics", "subject": "Mathematics"}, {"name": "(BO): Biology", "subject": "Biology"}]
    store = ScriptedStore(ontologies=existing)
    connections = {
        "connections": [
            {"existingOntology": "Mathematics", "relationship": "related", "confidence": 0.9},
            {"existingOntology": "(BO): Biology", "relationship": "child", "confidence": 0.7},
            {"existingOntology": "Astrology", "relationship": "parent", "confidence": 0.95},
            {"existingOntology": "Mathematics", "relationship": "sibling", "confidence": 0.99},
        ]
    }
    llm = ScriptedLLM({"isRepresented": False}, STRUCTURE, STATEMENTS, connections)

    result = await _builder(store, llm, config).create_base_ontology("Physics")

    assert result.success is True
    link_params = [params for query, params in store.gated if "RELATED_TO" in query]
    assert link_params == [{"subject": "Physics", "other": "Mathematics"}]
    assert len(store.gated) == 3


@pytest.mark.asyncio
async def test_related_link_failures_do_not_fail_the_workflow(config):
    store = ScriptedStore(ontologies=[{"name": "(BO): Mathematics", "subject": "Mathematics"}])
    llm = ScriptedLLM({"isRepresented": False}, STRUCTURE, STATEMENTS, CollaboratorError("LLM API call failed"))

    result = await _builder(store, llm, config).create_base_ontology("Physics")

    assert result.success is True
    assert store.live_tokens == set()


@pytest.mark.asyncio
async def test_blank_subject_is_rejected(config):
    store = ScriptedStore()

    result = await _builder(store, ScriptedLLM(), config).create_base_ontology("  ")

    assert result.success is False
    assert store.calls == []


@pytest.mark.parametrize(
    "query",
    [
        "MATCH (n) RETURN n",
        "MATCH (n) REMOVE n.name SET n.x = 1",
        "CALL apoc.do.it() CREATE (n)",
        "LOAD CSV FROM 'file:///x' AS row CREATE (n)",
        "MATCH (s:SecurityNode) SET s.expiresAt = datetime() + duration('P1Y')",
    ],
)
def test_validate_statement_rejects(query):
    with pytest.raises(CollaboratorError):
        validate_statement(GeneratedStatement(description="bad", query=query))


def test_validate_statement_accepts_creation():
    statement = GeneratedStatement(description="ok", query="MERGE (bo:BaseOntology {subject: $subject})")

    assert validate_statement(statement) is statement


@pytest.mark.parametrize("name", ["(OE): Call Routing", "(OE): Drop Shipping", "(OE): Trade Union", "(OE): Remove Friction"])
def test_validate_statement_ignores_keywords_inside_literals(name):
    statement = GeneratedStatement(description="entity", query=f"MERGE (e:OntologyEntity {{name: '{name}'}})")

    assert validate_statement(statement) is statement


def test_validate_statement_rejects_real_call_next_to_literal():
    statement = GeneratedStatement(
        description="sneaky", query="MERGE (e:OntologyEntity {name: '(OE): Call Routing'}) WITH e CALL db.x()"
    )

    with pytest.raises(CollaboratorError, match="CALL"):
        validate_statement(statement)


@pytest.mark.asyncio
async def test_ontology_named_after_keyword_is_created(config):
    store = ScriptedStore()
    structure = {"name": "Call Center", "entities": [{"name": "Call Routing"}]}
    statements = {
        "queries": [
            {"description": "base", "query": "MERGE (bo:BaseOntology {name: '(BO): Call Center', subject: $subject})"},
            {"description": "entity", "query": "MERGE (e:OntologyEntity {name: '(OE): Call Routing'})"},
        ]
    }
    llm = ScriptedLLM(structure, statements)

    result = await _builder(store, llm, config).create_base_ontology("Call Center")

    assert result.success is True
    assert len(store.gated) == 2
