"""
Structured Output Validation
============================

Turns raw model text into a typed pydantic object without ever raising.

Each schema field carries a fallback default: an invalid value falls back
to that default, a missing value uses it, and unparseable output yields a
fully-defaulted object (optionally after asking the model again).

``ProviderGateway.generate_structured`` runs generation through this.
"""

import json
import re
from typing import Any, Awaitable, Callable, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator

from helpdesk_retrieval.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


class FallbackModel(BaseModel):
    """Base for schemas whose invalid fields silently take their default."""

    @field_validator("*", mode="wrap")
    @classmethod
    def _fallback_to_default(cls, value: Any, handler, info: ValidationInfo) -> Any:
        try:
            return handler(value)
        except ValidationError:
            return cls.model_fields[info.field_name].get_default(call_default_factory=True)


class ClassificationSchema(FallbackModel):
    """Request classification produced by the model."""
    category: Literal[
        "technical_support", "reclamation", "consultation",
        "spare_parts", "installation", "other"
    ] = "other"
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    skills: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""


class SentimentSchema(FallbackModel):
    """Customer sentiment of a message."""
    label: Literal["positive", "neutral", "negative", "frustrated", "urgent"] = "neutral"
    score: float = Field(default=0.5, ge=0.0, le=1.0)


SchemaT = TypeVar("SchemaT", bound=FallbackModel)


def extract_json(raw_output: str) -> Optional[Any]:
    """Parse JSON from raw model text, unwrapping a markdown code fence."""
    if not raw_output:
        return None
    text = raw_output.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _parse(raw_output: str, schema: Type[SchemaT]) -> Optional[SchemaT]:
    data = extract_json(raw_output)
    if not isinstance(data, dict):
        return None
    try:
        return schema.model_validate(data)
    except ValidationError:
        return None


async def validate_ai_output(
    raw_output: str,
    schema: Type[SchemaT],
    retry_fn: Optional[Callable[[], Awaitable[str]]] = None,
    max_retries: int = 1
) -> SchemaT:
    """
    Validate model output against a fallback schema.

    Args:
        raw_output: Text returned by the backend
        schema: FallbackModel subclass to validate against
        retry_fn: Async callable producing a fresh model output
        max_retries: How many times to call retry_fn on unparseable output

    Returns:
        Schema instance; all-defaults if nothing parseable was produced
    """
    parsed = _parse(raw_output, schema)
    if parsed is not None:
        return parsed

    if retry_fn is not None:
        for attempt in range(max_retries):
            logger.warning(
                "Unparseable model output, retrying",
                extra={"schema": schema.__name__, "attempt": attempt + 1}
            )
            try:
                retry_output = await retry_fn()
            except Exception as e:
                logger.warning(
                    "Retry for model output failed",
                    extra={"schema": schema.__name__, "error": str(e)}
                )
                continue
            parsed = _parse(retry_output, schema)
            if parsed is not None:
                return parsed

    logger.warning(
        "Model output could not be parsed, using defaults",
        extra={"schema": schema.__name__, "raw_preview": (raw_output or "")[:200]}
    )
    return schema()
