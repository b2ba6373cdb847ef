"""Readers for the user-intent fields stored in path metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from .ids import parse_uuid_list


@dataclass
class IntakeContext:
    """
    Intake written by the (out of scope) path intake step.

    `confirmed` is True when no intake exists at all: only an intake that is
    present and unconfirmed pauses downstream stages.
    """

    present: bool = False
    confirmed: bool = True
    intent_md: str = ""
    file_ids: list[UUID] = field(default_factory=list)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


def intake_context(meta: dict[str, Any] | None) -> IntakeContext:
    meta = _as_dict(meta)
    ctx = IntakeContext(intent_md=str(meta.get("intake_md") or "").strip())
    intake = meta.get("intake")
    if isinstance(intake, dict):
        ctx.present = True
        ctx.confirmed = _truthy(intake.get("paths_confirmed"))
        ctx.file_ids = parse_uuid_list(intake.get("material_file_ids"))
    return ctx


def charter_style(meta: dict[str, Any] | None) -> dict[str, Any]:
    """Style manifest from the stored charter (empty when absent)."""
    charter = _as_dict(_as_dict(meta).get("charter"))
    return _as_dict(charter.get("path_style") or charter.get("style"))


def pattern_hierarchy(meta: dict[str, Any] | None) -> dict[str, Any]:
    return _as_dict(_as_dict(meta).get("pattern_hierarchy"))
