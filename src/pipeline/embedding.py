"""Batched embedding calls shared by the stages."""

from __future__ import annotations

from collections.abc import Sequence

from loguru import logger

from .concurrency import run_bounded
from .errors import ContractError
from .ids import chunked


async def embed_in_batches(
    prompts,
    stage: str,
    texts: Sequence[str],
    batch_size: int = 64,
    concurrency: int = 20,
) -> list[list[float]]:
    """Embed texts in parallel batches; output order matches input order."""
    texts = list(texts)
    if not texts:
        return []
    batches = chunked(texts, max(1, batch_size))

    async def _embed(batch: list[str]) -> list[list[float]]:
        vectors = await prompts.embed(batch)
        if len(vectors) != len(batch):
            raise ContractError(stage, f"embedding count mismatch (got {len(vectors)} want {len(batch)})")
        return vectors

    results = await run_bounded(batches, concurrency, _embed)
    out = [v for batch in results for v in batch]
    logger.debug(f"{stage}: embedded {len(out)} texts in {len(batches)} batches")
    return out
