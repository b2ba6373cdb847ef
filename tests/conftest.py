"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests:
an in-memory unit of work mirroring `LearningRepository`, scripted prompt
runners and recording vector/graph stores.
"""
import copy
import hashlib
import math
import re
import sys
import uuid
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.pipeline.ids import deterministic_uuid  # noqa: E402
from src.pipeline.records import (  # noqa: E402
    ChunkRecord,
    FileRecord,
    PathRecord,
    StageInput,
)
from src.sync.vector_store import VectorMatch  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "smoke: Smoke tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ========================================
# Embeddings
# ========================================

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class FakeEmbedder:
    """Deterministic bag-of-words vectors: shared words mean high cosine."""

    def __init__(self, dim: int = 64):
        self.dim = dim
        self.calls = 0

    def vector(self, text: str) -> list[float]:
        values = [0.0] * self.dim
        for token in _TOKEN_RE.findall((text or "").lower()):
            bucket = int(hashlib.sha256(token.encode()).hexdigest(), 16) % self.dim
            values[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in values))
        if norm == 0:
            values[0] = 1.0
            return values
        return [v / norm for v in values]

    async def embed(self, texts):
        self.calls += 1
        return [self.vector(t) for t in texts]


class FakePromptRunner:
    """
    Scripted `generate_json`.

    Responses are registered per schema name. A list is consumed in order and
    its last entry repeats; an exception instance is raised; a callable is
    called with (system, user) and its return value used.
    """

    def __init__(self, responses=None, embedder=None):
        self.responses = {k: (v if isinstance(v, list) else [v]) for k, v in (responses or {}).items()}
        self.embedder = embedder or FakeEmbedder()
        self.calls: list[tuple[str, str, str]] = []

    def script(self, schema_name, *responses):
        self.responses[schema_name] = list(responses)
        return self

    def calls_for(self, schema_name):
        return [c for c in self.calls if c[0] == schema_name]

    async def generate_json(self, system, user, schema_name, schema):
        self.calls.append((schema_name, system, user))
        queue = self.responses.get(schema_name)
        if not queue:
            raise AssertionError(f"no scripted response for {schema_name}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(system, user)
        return copy.deepcopy(response)

    async def embed(self, texts):
        return await self.embedder.embed(list(texts))


# ========================================
# Derived caches
# ========================================


def _cosine(a, b) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    return dot / (na * nb) if na and nb else 0.0


def _matches_filter(metadata, flt) -> bool:
    for key, expected in (flt or {}).items():
        value = metadata.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif isinstance(expected, dict) and "$eq" in expected:
            if value != expected["$eq"]:
                return False
        elif value != expected:
            return False
    return True


class FakeVectorStore:
    """Namespace -> id -> VectorItem, with brute-force cosine queries."""

    def __init__(self):
        self.namespaces: dict[str, dict] = defaultdict(dict)
        self.deleted: list[tuple[str, list[str]]] = []
        self.queries: list[tuple[str, int, dict | None]] = []
        self.fail_upserts = False
        self.fail_queries = False
        self.fail_deletes = False
        self.closed = False

    async def upsert(self, namespace, items):
        if self.fail_upserts:
            raise RuntimeError("vector store unavailable")
        for item in items:
            self.namespaces[namespace][item.id] = item
        return len(items)

    async def query_matches(self, namespace, vector, top_k, filter=None):
        self.queries.append((namespace, top_k, filter))
        if self.fail_queries:
            raise RuntimeError("vector store unavailable")
        scored = [
            VectorMatch(id=item.id, score=_cosine(vector, item.values), metadata=dict(item.metadata))
            for item in self.namespaces.get(namespace, {}).values()
            if _matches_filter(item.metadata, filter)
        ]
        scored.sort(key=lambda m: (-m.score, m.id))
        return scored[: max(1, top_k)]

    async def query_ids(self, namespace, vector, top_k, filter=None):
        return [m.id for m in await self.query_matches(namespace, vector, top_k, filter)]

    async def delete_ids(self, namespace, ids):
        if self.fail_deletes:
            raise RuntimeError("delete failed")
        self.deleted.append((namespace, list(ids)))
        for vid in ids:
            self.namespaces.get(namespace, {}).pop(vid, None)

    async def close(self):
        self.closed = True


class FakeGraphStore:
    def __init__(self):
        self.batches = []
        self.fail = False
        self.closed = False

    async def upsert(self, batch):
        if self.fail:
            raise RuntimeError("graph store unavailable")
        self.batches.append(batch)
        return len(batch.nodes) + len(batch.rels)

    async def close(self):
        self.closed = True


# ========================================
# In-memory repository
# ========================================


class UniqueViolation(Exception):
    """Mimics psycopg's UniqueViolation (SQLSTATE 23505)."""

    pgcode = "23505"


class InMemoryLearningStore:
    """Table state shared by every transaction of an InMemoryUnitOfWork."""

    def __init__(self):
        self.paths = {}
        self.source_sets = {}
        self.files = {}
        self.chunks = {}
        self.assets = defaultdict(list)
        self.summaries = {}
        self.concepts = {}
        self.evidences = {}
        self.edges = {}
        self.clusters = {}
        self.cluster_members = {}
        self.entities = {}
        self.claims = {}
        self.links = {}
        self.global_entities = {}
        self.profiles = {}
        self.concept_states = {}
        self.nodes = {}
        self.node_docs = {}
        self.node_doc_variants = {}
        self.generation_runs = []
        self.saga_runs = {}
        self.saga_actions = {}
        self.locks = []


class InMemoryLearningRepository:
    """Same surface as LearningRepository, backed by InMemoryLearningStore."""

    def __init__(self, store: InMemoryLearningStore):
        self.s = store

    def advisory_lock(self, stage, entity_id):
        self.s.locks.append((stage, str(entity_id)))

    # Paths

    def get_path(self, path_id):
        return copy.deepcopy(self.s.paths.get(path_id))

    def get_path_for_set(self, owner_user_id, material_set_id):
        for p in self.s.paths.values():
            if p.owner_user_id == owner_user_id and p.material_set_id == material_set_id:
                return copy.deepcopy(p)
        return None

    def ensure_path(self, owner_user_id, material_set_id, title=""):
        existing = self.get_path_for_set(owner_user_id, material_set_id)
        if existing is not None:
            return existing
        path_id = deterministic_uuid("path", owner_user_id, material_set_id)
        self.s.paths[path_id] = PathRecord(
            id=path_id, owner_user_id=owner_user_id, material_set_id=material_set_id, title=title
        )
        return copy.deepcopy(self.s.paths[path_id])

    def update_path(self, path_id, title=None, description=None, metadata=None):
        row = self.s.paths.get(path_id)
        if row is None:
            raise LookupError(f"path {path_id} not found")
        if title is not None:
            row.title = title
        if description is not None:
            row.description = description
        if metadata:
            row.metadata = {**row.metadata, **copy.deepcopy(metadata)}

    # Materials

    def resolve_source_set_id(self, material_set_id):
        return self.s.source_sets.get(material_set_id, material_set_id)

    def list_files(self, material_set_id):
        return [copy.deepcopy(f) for f in self.s.files.values() if f.material_set_id == material_set_id]

    def list_chunks(self, material_set_id, file_ids=None):
        order = [f.id for f in self.s.files.values() if f.material_set_id == material_set_id]
        if file_ids:
            order = [f for f in order if f in set(file_ids)]
        rank = {fid: i for i, fid in enumerate(order)}
        rows = [c for c in self.s.chunks.values() if c.file_id in rank]
        rows.sort(key=lambda c: (rank[c.file_id], c.index))
        return copy.deepcopy(rows)

    def get_chunks(self, chunk_ids):
        return [copy.deepcopy(self.s.chunks[c]) for c in chunk_ids if c in self.s.chunks]

    def lexical_chunk_ids(self, material_set_id, query, limit, file_ids=None):
        words = set(_TOKEN_RE.findall((query or "").lower()))
        if not words or limit <= 0:
            return []
        scored = []
        for c in self.list_chunks(material_set_id, file_ids):
            hits = len(words & set(_TOKEN_RE.findall(c.text.lower())))
            if hits:
                scored.append((-hits, str(c.id), c.id))
        return [cid for _, _, cid in sorted(scored)[:limit]]

    def list_assets(self, material_set_id):
        return copy.deepcopy(self.s.assets.get(material_set_id, []))

    def get_material_set_summary(self, material_set_id):
        return self.s.summaries.get(material_set_id, "")

    # Concepts

    def list_concepts(self, scope, scope_id):
        rows = [
            c for c in self.s.concepts.values()
            if c.scope == scope and c.scope_id == scope_id and c.deleted_at is None
        ]
        return copy.deepcopy(sorted(rows, key=lambda c: c.key))

    def get_concepts_by_ids(self, concept_ids):
        return [copy.deepcopy(self.s.concepts[c]) for c in concept_ids if c in self.s.concepts]

    def get_global_concepts_by_keys(self, keys):
        wanted = {k for k in keys if k}
        return {
            c.key: copy.deepcopy(c)
            for c in self.s.concepts.values()
            if c.scope == "global" and c.key in wanted and c.deleted_at is None
        }

    def insert_concepts(self, records):
        taken = {(c.scope, c.scope_id, c.key) for c in self.s.concepts.values()}
        for r in records:
            if r.id in self.s.concepts or (r.scope, r.scope_id, r.key) in taken:
                raise UniqueViolation("duplicate key value violates unique constraint \"uq_concept_scope_key\"")
        for r in records:
            row = copy.deepcopy(r)
            row.parent_id = None
            self.s.concepts[r.id] = row
        return len(records)

    def set_concept_parents(self, parents):
        for concept_id, parent_id in parents.items():
            self.s.concepts[concept_id].parent_id = parent_id

    def set_canonical_concept_ids(self, mapping):
        for concept_id, canonical_id in mapping.items():
            self.s.concepts[concept_id].canonical_concept_id = canonical_id

    def upsert_global_concepts(self, records):
        for r in records:
            if r.id in self.s.concepts:
                self.s.concepts[r.id].summary = r.summary
                continue
            row = copy.deepcopy(r)
            row.scope, row.scope_id, row.depth = "global", None, 0
            row.canonical_concept_id = r.canonical_concept_id or r.id
            self.s.concepts[r.id] = row
        return len(records)

    def insert_evidences(self, records):
        return self._insert_ignore(self.s.evidences, records)

    def insert_edges(self, records):
        return self._insert_ignore(self.s.edges, records)

    def list_edges(self, concept_ids):
        ids = set(concept_ids)
        rows = [
            e for e in self.s.edges.values()
            if e.deleted_at is None and (e.from_concept_id in ids or e.to_concept_id in ids)
        ]
        rows.sort(key=lambda e: (str(e.from_concept_id), str(e.to_concept_id), e.edge_type))
        return copy.deepcopy(rows)

    def restore_concepts(self, scope, scope_id):
        ids = [
            c.id for c in self.s.concepts.values()
            if c.scope == scope and c.scope_id == scope_id and c.deleted_at is not None
        ]
        for cid in ids:
            self.s.concepts[cid].deleted_at = None
        for e in self.s.evidences.values():
            if e.concept_id in ids:
                e.deleted_at = None
        for e in self.s.edges.values():
            if e.from_concept_id in ids or e.to_concept_id in ids:
                e.deleted_at = None
        return len(ids)

    # Clusters

    def list_clusters(self, path_id):
        rows = [c for c in self.s.clusters.values() if c.path_id == path_id]
        return copy.deepcopy(sorted(rows, key=lambda c: c.label))

    def insert_clusters(self, records):
        for r in records:
            if r.id in self.s.clusters:
                raise UniqueViolation("duplicate key value violates unique constraint \"concept_cluster_pkey\"")
        for r in records:
            self.s.clusters[r.id] = copy.deepcopy(r)
        return len(records)

    def insert_cluster_members(self, records):
        return self._insert_ignore(self.s.cluster_members, records)

    # Material knowledge graph

    def count_material_kg(self, material_set_id):
        entities = sum(1 for e in self.s.entities.values() if e.material_set_id == material_set_id)
        claims = sum(1 for c in self.s.claims.values() if c.material_set_id == material_set_id)
        return entities, claims

    def upsert_entities(self, records):
        for r in records:
            self.s.entities[r.id] = copy.deepcopy(r)
        return len(records)

    def upsert_claims(self, records):
        for r in records:
            self.s.claims[r.id] = copy.deepcopy(r)
        return len(records)

    def insert_links(self, links):
        return self._insert_ignore(self.s.links, links)

    def list_global_entities(self):
        return copy.deepcopy(sorted(self.s.global_entities.values(), key=lambda g: g.key))

    def upsert_global_entities(self, records):
        for r in records:
            existing = self.s.global_entities.get(r.key)
            if existing is not None:
                existing.aliases = list(r.aliases)
                continue
            self.s.global_entities[r.key] = copy.deepcopy(r)
        return len(records)

    # User context

    def get_user_profile_doc(self, user_id):
        doc = self.s.profiles.get(user_id)
        return doc if doc and doc.strip() else None

    def list_user_concept_states(self, user_id, concept_ids):
        return {
            cid: copy.deepcopy(self.s.concept_states[(user_id, cid)])
            for cid in concept_ids
            if (user_id, cid) in self.s.concept_states
        }

    # Path nodes and docs

    def list_path_nodes(self, path_id):
        rows = [n for n in self.s.nodes.values() if n.path_id == path_id]
        return copy.deepcopy(sorted(rows, key=lambda n: n.index))

    def upsert_path_nodes(self, records):
        for r in records:
            key = (r.path_id, r.index)
            existing = self.s.nodes.get(key)
            if existing is None:
                self.s.nodes[key] = copy.deepcopy(r)
            else:
                existing.title = r.title
                existing.metadata = copy.deepcopy(r.metadata)
                existing.parent_node_id = r.parent_node_id
        return len(records)

    def list_node_docs(self, path_id):
        return copy.deepcopy([d for d in self.s.node_docs.values() if d.path_id == path_id])

    def get_node_doc(self, path_node_id):
        return copy.deepcopy(self.s.node_docs.get(path_node_id))

    def upsert_node_doc(self, record):
        existing = self.s.node_docs.get(record.path_node_id)
        row = copy.deepcopy(record)
        if existing is not None:
            row.id = existing.id
        self.s.node_docs[record.path_node_id] = row

    def upsert_node_doc_variant(self, record):
        key = (record.user_id, record.path_node_id, record.variant_kind, record.snapshot_id)
        existing = self.s.node_doc_variants.get(key)
        row = copy.deepcopy(record)
        if existing is not None:
            row.id = existing.id
        self.s.node_doc_variants[key] = row

    def insert_generation_run(self, record):
        self.s.generation_runs.append(copy.deepcopy(record))

    # Saga

    def ensure_saga_run(self, saga_id, owner_user_id=None):
        self.s.saga_runs.setdefault(saga_id, "running")

    def lock_saga_run(self, saga_id):
        return self.s.saga_runs.get(saga_id)

    def next_saga_seq(self, saga_id):
        seqs = [a.seq for a in self.s.saga_actions.values() if a.saga_id == saga_id]
        return max(seqs, default=0) + 1

    def insert_saga_action(self, record):
        self.s.saga_actions[record.id] = copy.deepcopy(record)

    def list_saga_actions(self, saga_id, status=None):
        rows = [
            a for a in self.s.saga_actions.values()
            if a.saga_id == saga_id and (status is None or a.status == status)
        ]
        return copy.deepcopy(sorted(rows, key=lambda a: a.seq))

    def update_saga_action(self, action_id, status, error=None):
        action = self.s.saga_actions[action_id]
        action.status = status
        action.error = error

    def set_saga_status(self, saga_id, status):
        if saga_id in self.s.saga_runs:
            self.s.saga_runs[saga_id] = status

    @staticmethod
    def _insert_ignore(table, records):
        inserted = 0
        for r in records:
            if r.id not in table:
                table[r.id] = copy.deepcopy(r)
                inserted += 1
        return inserted


class InMemoryUnitOfWork:
    """`transaction()` rolls the store back to a snapshot when the block raises."""

    def __init__(self, store=None):
        self.store = store or InMemoryLearningStore()
        self.transactions = 0

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.store.__dict__)
        self.transactions += 1
        try:
            yield InMemoryLearningRepository(self.store)
        except Exception:
            self.store.__dict__.clear()
            self.store.__dict__.update(snapshot)
            raise

    @contextmanager
    def read(self):
        yield InMemoryLearningRepository(self.store)


# ========================================
# Seed helpers
# ========================================


class MaterialSeed:
    """Seeds users, material sets, files and chunks into an in-memory store."""

    def __init__(self, uow: InMemoryUnitOfWork):
        self.uow = uow
        self.user_id = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
        self.set_id = uuid.UUID("00000000-0000-0000-0000-0000000000b1")
        self.saga_id = uuid.UUID("00000000-0000-0000-0000-0000000000c1")

    def add_file(self, name="notes.pdf", set_id=None):
        fid = deterministic_uuid("test_file", set_id or self.set_id, name)
        self.uow.store.files[fid] = FileRecord(id=fid, material_set_id=set_id or self.set_id, name=name)
        return fid

    def add_chunks(self, texts, file_id=None, embedder=None):
        file_id = file_id or self.add_file()
        out = []
        start = sum(1 for c in self.uow.store.chunks.values() if c.file_id == file_id)
        for i, text in enumerate(texts, start=start):
            cid = deterministic_uuid("test_chunk", file_id, i)
            self.uow.store.chunks[cid] = ChunkRecord(
                id=cid,
                file_id=file_id,
                index=i,
                text=text,
                embedding=embedder.vector(text) if embedder else None,
                page=i + 1,
            )
            out.append(cid)
        return out

    def add_profile(self, doc="Backend engineer, comfortable with Python, new to networking."):
        self.uow.store.profiles[self.user_id] = doc

    def stage_input(self, path_id=None):
        return StageInput(
            owner_user_id=self.user_id,
            material_set_id=self.set_id,
            saga_id=self.saga_id,
            path_id=path_id,
        )


# ========================================
# Fixtures
# ========================================


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def uow():
    return InMemoryUnitOfWork()


@pytest.fixture
def seed(uow):
    return MaterialSeed(uow)


@pytest.fixture
def vectors():
    return FakeVectorStore()


@pytest.fixture
def graph():
    return FakeGraphStore()


@pytest.fixture
def prompts(embedder):
    return FakePromptRunner(embedder=embedder)


@pytest.fixture
def settings(monkeypatch):
    """Fresh Settings with external services off and small concurrency."""
    from config import Settings

    monkeypatch.setenv("GRAPH_SYNC_ENABLED", "false")
    monkeypatch.setenv("LEARNING_QUALITY_MODE", "standard")
    monkeypatch.delenv("PINECONE_API_KEY", raising=False)
    monkeypatch.delenv("PINECONE_INDEX_HOST", raising=False)
    return Settings(_env_file=None)


# ============================================================================
# Lesson doc payloads
# ============================================================================

_TOPICS = (
    "routing tables", "subnet masks", "default gateways", "address resolution",
    "packet forwarding", "frame switching", "hop limits", "route summarization",
)


def _prose(index: int, words: int = 150) -> str:
    """Distinct filler prose of roughly `words` words."""
    topic = _TOPICS[index % len(_TOPICS)]
    sentence = f"Section {index} walks through how {topic} shape the path a packet takes across the network."
    per = len(sentence.split())
    return " ".join([sentence] * max(1, words // per))


def lesson_doc_payload(headings, chunk_id=None, concept_keys=None):
    """
    A flat-`blocks` doc that satisfies the concept template minimums.

    Three quick checks, eight paragraphs, two callouts (one a worked example)
    and one of each explainer and pitfall block, spread across `headings`.
    """
    cites = [{"chunk_id": str(chunk_id), "quote": "excerpt"}] if chunk_id else []
    sections = []
    for h in headings:
        sections.append([{"type": "heading", "level": 2, "text": h}])
    p = 0

    def para():
        nonlocal p
        p += 1
        return {"type": "paragraph", "md": _prose(p), "citations": list(cites)}

    def qc(n):
        return {
            "type": "quick_check",
            "kind": "mcq",
            "prompt_md": f"Which statement about {_TOPICS[n]} is accurate?",
            "options": [{"id": "a", "text": f"Option one for {n}"}, {"id": "b", "text": f"Option two for {n}"}],
            "answer_id": "a",
            "answer_md": f"The first option describes {_TOPICS[n]} correctly.",
            "citations": list(cites),
        }

    body = [
        [para(), para(), para(),
         {"type": "why_it_matters", "title": "Why it matters", "md": "Reachability depends on it.", "citations": list(cites)},
         {"type": "callout", "variant": "tip", "title": "Worked example: one hop",
          "md": "Trace a packet from host A to host B.", "citations": list(cites)},
         qc(0)],
        [para(), para(), para(),
         {"type": "intuition", "title": "Intuition", "md": "Think of signposts at each junction.", "citations": list(cites)},
         {"type": "callout", "variant": "info", "title": "Key point",
          "md": "Longest prefix wins.", "citations": list(cites)},
         qc(1)],
        [para(), para(),
         {"type": "mental_model", "title": "Mental model", "md": "A table of arrows.", "citations": list(cites)},
         {"type": "common_mistakes", "title": "Common mistakes", "items": ["Confusing masks with gateways."],
          "citations": list(cites)},
         qc(2)],
    ]
    blocks = []
    for i, section in enumerate(sections):
        blocks.extend(section)
        if i < len(body):
            blocks.extend(body[i])
    for extra in body[len(sections):]:
        blocks.extend(extra)
    return {
        "schema_version": 1,
        "concept_keys": list(concept_keys or []),
        "summary": "How routers pick the next hop.",
        "blocks": blocks,
    }
