"""
Prompt Runner - the single boundary between pipeline stages and the AI provider.

Exposes two calls:
- generate_json(system, user, schema_name, schema) -> dict
- embed(texts) -> list[list[float]]

Transient provider failures (rate limits, 5xx, timeouts, unparseable output)
are retried with exponential backoff. A deterministic schema rejection is
raised immediately as SchemaRejectedError.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions
from loguru import logger

from config import get_settings
from src.generation.schemas import get_generation_config
from src.pipeline.errors import SchemaRejectedError

SCHEMA_REJECTION_MARKERS = ("invalid_json_schema", "response_schema", "invalid json schema")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
    asyncio.TimeoutError,
    ConnectionError,
)


class PromptError(Exception):
    """Prompt call failed after exhausting retries."""

    def __init__(self, schema_name: str, message: str, attempts: int = 0):
        self.schema_name = schema_name
        self.attempts = attempts
        super().__init__(f"{schema_name}: {message}")


def is_schema_rejection(exc: BaseException) -> bool:
    """Deterministic 400s about the response schema; retrying cannot help."""
    if not isinstance(exc, (google_exceptions.InvalidArgument, google_exceptions.BadRequest)):
        return False
    text = str(exc).lower()
    return any(marker in text for marker in SCHEMA_REJECTION_MARKERS)


def parse_json_object(text: str) -> dict[str, Any]:
    """Decode a JSON object from model output, tolerating code fences and preamble."""
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    if not cleaned:
        raise ValueError("Empty response from model")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT_RE.search(cleaned)
        if not match:
            raise ValueError("No JSON object found in response")
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class PromptRunner:
    """
    Gemini-backed JSON generation plus sentence-transformers embeddings.

    Example:
        >>> runner = PromptRunner()
        >>> obj = await runner.generate_json(system, user, "concept_edges", CONCEPT_EDGES_SCHEMA)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        embedder: Any = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.ai_model
        self.temperature = settings.ai_temperature
        self.max_output_tokens = settings.ai_max_output_tokens
        self.max_attempts = max(1, max_attempts or settings.prompt_max_attempts)
        self.base_delay = settings.prompt_retry_base_delay if base_delay is None else base_delay
        self._embedder = embedder
        self._models: dict[str, Any] = {}

    def _model_for(self, system: str):
        """Lazy-load one Gemini model per system instruction."""
        model = self._models.get(system)
        if model is None:
            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            model = genai.GenerativeModel(
                model_name=self.model_name,
                system_instruction=system,
            )
            self._models[system] = model
        return model

    @property
    def embedder(self):
        if self._embedder is None:
            from src.semantic.embedding_service import EmbeddingService

            self._embedder = EmbeddingService()
        return self._embedder

    async def generate_json(
        self,
        system: str,
        user: str,
        schema_name: str,
        schema: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Run one JSON-mode prompt with bounded retries."""
        model = self._model_for(system.strip())
        config = get_generation_config(schema, self.temperature, self.max_output_tokens)
        last_error: BaseException | None = None

        for attempt in range(self.max_attempts):
            started = time.monotonic()
            try:
                response = await model.generate_content_async(user.strip(), generation_config=config)
                data = parse_json_object(response.text)
                logger.debug(
                    f"Prompt {schema_name} ok in {(time.monotonic() - started) * 1000:.0f}ms "
                    f"(attempt {attempt + 1})"
                )
                return data
            except (google_exceptions.InvalidArgument, google_exceptions.BadRequest) as e:
                if is_schema_rejection(e):
                    logger.error(f"Prompt {schema_name} schema rejected: {e}")
                    raise SchemaRejectedError(schema_name, str(e)) from e
                raise PromptError(schema_name, str(e), attempt + 1) from e
            except TRANSIENT_ERRORS as e:
                last_error = e
            except ValueError as e:
                # Unparseable or empty output; a fresh sample usually fixes it.
                last_error = e

            if attempt < self.max_attempts - 1:
                delay = self.base_delay * (2**attempt)
                logger.warning(
                    f"Prompt {schema_name} attempt {attempt + 1}/{self.max_attempts} failed: "
                    f"{last_error}. Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"Prompt {schema_name} failed after {self.max_attempts} attempts: {last_error}")
        raise PromptError(schema_name, str(last_error), self.max_attempts) from last_error

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await self.embedder.embed(list(texts))
