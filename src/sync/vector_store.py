"""
Pinecone data-plane client (REST over httpx).

Vector ids follow `<type>:<uuid>` and namespaces follow the pipeline
conventions (`chunks:<set>`, `concepts:path:<path>`, `concepts:global`,
`concept_clusters:path:<path>`). Upserts are idempotent by vector id.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from config import get_settings


class VectorStoreError(Exception):
    """Raised when the vector store cannot complete a request."""


def chunks_namespace(material_set_id: object) -> str:
    return f"chunks:{material_set_id}"


def path_concepts_namespace(path_id: object) -> str:
    return f"concepts:path:{path_id}"


GLOBAL_CONCEPTS_NAMESPACE = "concepts:global"


def path_clusters_namespace(path_id: object) -> str:
    return f"concept_clusters:path:{path_id}"


def set_summaries_namespace(owner_user_id: object) -> str:
    return f"material_set_summaries:{owner_user_id}"


def vector_id(kind: str, entity_id: object) -> str:
    return f"{kind}:{entity_id}"


@dataclass
class VectorItem:
    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "values": [float(v) for v in self.values], "metadata": self.metadata}


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VectorMatch:
        return cls(
            id=str(data.get("id", "")),
            score=float(data.get("score") or 0.0),
            metadata=data.get("metadata") or {},
        )


class PineconeVectorStore:
    """Async client for upsert, query and delete against one index host."""

    def __init__(
        self,
        api_key: str | None = None,
        index_host: str | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.pinecone_api_key
        host = index_host if index_host is not None else settings.pinecone_index_host
        if host and not host.startswith("http"):
            host = f"https://{host}"
        self.index_host = host.rstrip("/")
        self.retry_attempts = max(1, retry_attempts or settings.pinecone_max_retries)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.pinecone_timeout),
            headers={"Api-Key": self.api_key, "Content-Type": "application/json"},
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST with retries on timeouts, transport errors and 5xx; 4xx fails immediately."""
        if not self.index_host:
            raise VectorStoreError("Pinecone index host is not configured")
        url = f"{self.index_host}{path}"
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(url, json=payload)
                response.raise_for_status()
                return response.json() if response.content else {}

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    logger.error(f"Pinecone client error {e.response.status_code} on {path}: {e.response.text[:200]}")
                    raise VectorStoreError(f"{path} rejected with {e.response.status_code}") from e
                wait_time = 2**attempt
                logger.warning(
                    f"Pinecone server error {e.response.status_code} on attempt "
                    f"{attempt + 1}/{self.retry_attempts}. Retrying in {wait_time}s..."
                )
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(wait_time)

            except httpx.RequestError as e:
                last_error = e
                wait_time = 2**attempt
                logger.warning(
                    f"Pinecone request error on attempt {attempt + 1}/{self.retry_attempts}: {e}. "
                    f"Retrying in {wait_time}s..."
                )
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(wait_time)

        raise VectorStoreError(f"{path} failed after {self.retry_attempts} attempts: {last_error}")

    async def upsert(self, namespace: str, items: list[VectorItem]) -> int:
        if not items:
            return 0
        data = await self._post(
            "/vectors/upsert",
            {"namespace": namespace, "vectors": [item.to_dict() for item in items]},
        )
        return int(data.get("upsertedCount", len(items)))

    async def query_matches(
        self,
        namespace: str,
        vector: list[float],
        top_k: int,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        payload: dict[str, Any] = {
            "namespace": namespace,
            "vector": [float(v) for v in vector],
            "topK": max(1, top_k),
            "includeMetadata": True,
            "includeValues": False,
        }
        if filter:
            payload["filter"] = filter
        data = await self._post("/query", payload)
        return [VectorMatch.from_dict(m) for m in data.get("matches") or []]

    async def query_ids(
        self,
        namespace: str,
        vector: list[float],
        top_k: int,
        filter: dict[str, Any] | None = None,
    ) -> list[str]:
        return [m.id for m in await self.query_matches(namespace, vector, top_k, filter)]

    async def delete_ids(self, namespace: str, ids: list[str]) -> None:
        if not ids:
            return
        await self._post("/vectors/delete", {"namespace": namespace, "ids": list(ids)})
