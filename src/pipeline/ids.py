"""Deterministic identifiers and content hashes."""

from __future__ import annotations

import hashlib
import uuid
from collections.abc import Iterable
from typing import Any
from uuid import UUID


def deterministic_uuid(namespace: str, *parts: Any) -> UUID:
    """UUID from the first 16 bytes of sha256("namespace|part|part...")."""
    raw = "|".join([namespace, *(str(p) for p in parts)])
    return uuid.UUID(bytes=hashlib.sha256(raw.encode("utf-8")).digest()[:16])


def parse_uuid(value: Any) -> UUID | None:
    """Parse a UUID from str/UUID; returns None for blanks and garbage."""
    if isinstance(value, UUID):
        return value
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return uuid.UUID(text)
    except ValueError:
        return None


def parse_uuid_list(values: Iterable[Any] | None) -> list[UUID]:
    """Parse and dedupe a list of UUIDs preserving first-seen order."""
    out: list[UUID] = []
    seen: set[UUID] = set()
    for value in values or []:
        parsed = parse_uuid(value)
        if parsed is None or parsed in seen:
            continue
        seen.add(parsed)
        out.append(parsed)
    return out


def merge_uuid_lists(*lists: Iterable[UUID] | None) -> list[UUID]:
    """Concatenate id lists, dropping duplicates but keeping first-seen order."""
    out: list[UUID] = []
    seen: set[UUID] = set()
    for ids in lists:
        for value in ids or []:
            if value in seen:
                continue
            seen.add(value)
            out.append(value)
    return out


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def sources_hash(prompt_version: str, schema_version: int, chunk_ids: Iterable[UUID]) -> str:
    """Input fingerprint for a generated doc; independent of chunk id order."""
    ordered = sorted({str(c) for c in chunk_ids})
    return sha256_hex(f"{prompt_version}|{schema_version}|{','.join(ordered)}")


def chunked(items: list, size: int) -> list[list]:
    size = max(1, size)
    return [items[i : i + size] for i in range(0, len(items), size)]
