"""
Neo4j graph cache over the HTTP transactional endpoint.

Canonical rows are mirrored as MERGE statements; the graph is a rebuildable
cache, so callers treat every failure here as non-fatal.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from config import get_settings

NODE_LABELS = frozenset({"Concept", "Path", "PathNode", "ConceptCluster", "MaterialEntity", "MaterialClaim", "Chunk"})
REL_TYPES = frozenset({"PREREQ", "RELATED", "ANALOGY", "CHILD_OF", "IN_CLUSTER", "MENTIONS", "SUPPORTS", "ABOUT"})


class GraphStoreError(Exception):
    """Raised when the graph store rejects or cannot complete a write."""


@dataclass
class GraphNode:
    label: str
    id: str
    props: dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphRel:
    type: str
    from_label: str
    from_id: str
    to_label: str
    to_id: str
    props: dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphBatch:
    nodes: list[GraphNode] = field(default_factory=list)
    rels: list[GraphRel] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.nodes and not self.rels


def build_statements(batch: GraphBatch) -> list[dict[str, Any]]:
    """Group MERGE statements by label/type; unknown labels and types are dropped."""
    statements: list[dict[str, Any]] = []

    nodes_by_label: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for node in batch.nodes:
        if node.label in NODE_LABELS:
            nodes_by_label[node.label].append({"id": node.id, "props": node.props})
    for label in sorted(nodes_by_label):
        statements.append(
            {
                "statement": f"UNWIND $rows AS row MERGE (n:{label} {{id: row.id}}) SET n += row.props",
                "parameters": {"rows": nodes_by_label[label]},
            }
        )

    rels_by_shape: dict[tuple[str, str, str], list[dict[str, Any]]] = defaultdict(list)
    for rel in batch.rels:
        if rel.type not in REL_TYPES or rel.from_label not in NODE_LABELS or rel.to_label not in NODE_LABELS:
            continue
        rels_by_shape[(rel.type, rel.from_label, rel.to_label)].append(
            {"from": rel.from_id, "to": rel.to_id, "props": rel.props}
        )
    for rel_type, from_label, to_label in sorted(rels_by_shape):
        statements.append(
            {
                "statement": (
                    f"UNWIND $rows AS row "
                    f"MATCH (a:{from_label} {{id: row.from}}) MATCH (b:{to_label} {{id: row.to}}) "
                    f"MERGE (a)-[r:{rel_type}]->(b) SET r += row.props"
                ),
                "parameters": {"rows": rels_by_shape[(rel_type, from_label, to_label)]},
            }
        )
    return statements


class Neo4jGraphStore:
    """Async Neo4j HTTP client; one transaction per upsert."""

    def __init__(
        self,
        http_url: str | None = None,
        user: str | None = None,
        password: str | None = None,
        database: str | None = None,
        timeout: float = 15.0,
        retry_attempts: int = 3,
    ):
        settings = get_settings()
        self.http_url = (http_url or settings.neo4j_http_url).rstrip("/")
        self.database = database or settings.neo4j_database
        self.retry_attempts = max(1, retry_attempts)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            auth=(user or settings.neo4j_user, password if password is not None else settings.neo4j_password),
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def upsert(self, batch: GraphBatch) -> int:
        """Commit the batch in one transaction; returns the number of statements run."""
        if batch.is_empty():
            return 0
        statements = build_statements(batch)
        url = f"{self.http_url}/db/{self.database}/tx/commit"
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(url, json={"statements": statements})
                response.raise_for_status()
                errors = (response.json() or {}).get("errors") or []
                if errors:
                    raise GraphStoreError(f"neo4j rejected batch: {errors[0].get('message', errors[0])}")
                return len(statements)

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    raise GraphStoreError(f"neo4j client error {e.response.status_code}") from e
                wait_time = 2**attempt
                logger.warning(
                    f"Neo4j server error {e.response.status_code} on attempt "
                    f"{attempt + 1}/{self.retry_attempts}. Retrying in {wait_time}s..."
                )
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(wait_time)

            except httpx.RequestError as e:
                last_error = e
                wait_time = 2**attempt
                logger.warning(f"Neo4j request error on attempt {attempt + 1}/{self.retry_attempts}: {e}")
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(wait_time)

        raise GraphStoreError(f"neo4j upsert failed after {self.retry_attempts} attempts: {last_error}")
