"""Schema-constrained Gemini calls.

An agent call is one ``generate_content`` request framed by a role, asked to
answer in JSON matching a pydantic model, and optionally grounded with Google
Search. Callers wrap agent calls in ``retry_request``; nothing here retries.
"""

from __future__ import annotations

import types as pytypes
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar, Union, get_args, get_origin

from google.genai import types
from loguru import logger
from pydantic import BaseModel, ValidationError

from estimator.config import GEMINI_MODEL
from estimator.errors import SchemaViolationError
from estimator.models import (
    IntelligenceSource,
    ManualPriceItem,
    RecommendedService,
    WidgetIcon,
    WireModel,
)
from estimator.utils import parse_json

if TYPE_CHECKING:
    from google import genai

ModelT = TypeVar("ModelT", bound=BaseModel)

# =============================================================================
# Agent output schemas
# =============================================================================


class InvestigatorReport(WireModel):
    name: str
    industry: str
    services: list[str]
    decision_maker: str | None = None
    city_location: str | None = None


class MarketReport(WireModel):
    market_trends: list[str] | None = None
    suggested_questions: list[str] | None = None


class PricingReport(WireModel):
    pricing_rules: str
    manual_price_list: list[ManualPriceItem]


class BrandingReport(WireModel):
    header_title: str | None = None
    header_subtitle: str | None = None
    primary_color: str | None = None
    widget_icon: WidgetIcon | None = None
    curated_recommendations: list[RecommendedService] | None = None


# =============================================================================
# Schema translation
# =============================================================================

_SCALAR_TYPES = {
    str: types.Type.STRING,
    int: types.Type.INTEGER,
    float: types.Type.NUMBER,
    bool: types.Type.BOOLEAN,
}


def schema_for(annotation: Any) -> types.Schema:
    """Translate a pydantic model (or field annotation) into a Gemini schema.

    Required properties are the model fields without defaults; optional
    unions become nullable.
    """
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        properties = {}
        required = []
        for name, info in annotation.model_fields.items():
            key = info.alias or name
            properties[key] = schema_for(info.annotation)
            if info.is_required():
                required.append(key)
        return types.Schema(
            type=types.Type.OBJECT,
            properties=properties,
            required=required or None,
        )

    origin = get_origin(annotation)
    args = get_args(annotation)

    if origin is Literal:
        return types.Schema(type=types.Type.STRING, enum=[str(arg) for arg in args])
    if origin is list:
        return types.Schema(type=types.Type.ARRAY, items=schema_for(args[0]))
    if origin in (Union, pytypes.UnionType):
        members = [arg for arg in args if arg is not type(None)]
        schema = schema_for(members[0])
        schema.nullable = True
        return schema
    if annotation in _SCALAR_TYPES:
        return types.Schema(type=_SCALAR_TYPES[annotation])

    raise TypeError(f"No Gemini schema for {annotation!r}")


# =============================================================================
# Decoding
# =============================================================================


@dataclass(frozen=True)
class Ok(Generic[ModelT]):
    value: ModelT


@dataclass(frozen=True)
class SchemaViolation:
    missing_fields: list[str] = field(default_factory=list)
    invalid_fields: list[str] = field(default_factory=list)


def decode_payload(payload: Any, model: type[ModelT]) -> Ok[ModelT] | SchemaViolation:
    """Validate decoded JSON against ``model``; unknown keys are ignored."""
    try:
        return Ok(model.model_validate(payload))
    except ValidationError as e:
        missing: list[str] = []
        invalid: list[str] = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"]) or "<root>"
            if error["type"] == "missing":
                missing.append(location)
            else:
                invalid.append(location)
        return SchemaViolation(missing_fields=missing, invalid_fields=invalid)


def grounding_sources(response: Any) -> list[IntelligenceSource]:
    """Collect the web citations Google Search grounding attached to a reply."""
    candidates = response.candidates or []
    if not candidates:
        return []

    metadata = candidates[0].grounding_metadata
    chunks = (metadata.grounding_chunks if metadata else None) or []

    sources = []
    for chunk in chunks:
        web = chunk.web
        if web and web.uri:
            sources.append(IntelligenceSource(title=web.title or "Source", url=web.uri))
    return sources


# =============================================================================
# Agent call
# =============================================================================


@dataclass
class AgentResult(Generic[ModelT]):
    data: ModelT
    sources: list[IntelligenceSource] = field(default_factory=list)


async def call_agent(
    client: genai.Client,
    role: str,
    prompt: str,
    output_model: type[ModelT],
    *,
    use_retrieval: bool = False,
    model: str = GEMINI_MODEL,
    parts: list[types.Part] | None = None,
) -> AgentResult[ModelT]:
    """Send one role-framed request and decode the reply into ``output_model``.

    Args:
        client: Gemini client
        role: Agent name, used in the prompt and in error messages
        prompt: Task instructions for the agent
        output_model: pydantic model the JSON reply must satisfy
        use_retrieval: Enable Google Search grounding for this call only
        model: Gemini model name
        parts: Extra content parts (e.g. an inline image) sent after the prompt

    Raises:
        MalformedResponseError: the reply held no decodable JSON
        SchemaViolationError: required fields were missing or mistyped
    """
    text = f"You are the '{role}' agent. {prompt}"
    contents: Any = text
    if parts:
        contents = [types.Content(role="user", parts=[types.Part(text=text), *parts])]

    config = types.GenerateContentConfig(
        response_mime_type="application/json",
        response_schema=schema_for(output_model),
        tools=[types.Tool(google_search=types.GoogleSearch())] if use_retrieval else None,
    )

    logger.info(f"{role}: calling {model}{' with web search' if use_retrieval else ''}")
    response = await client.aio.models.generate_content(model=model, contents=contents, config=config)

    sources = grounding_sources(response)
    payload = parse_json(response.text, role)

    result = decode_payload(payload, output_model)
    if isinstance(result, SchemaViolation):
        logger.error(f"{role}: schema violation {result}")
        raise SchemaViolationError(role, result.missing_fields, result.invalid_fields)

    logger.debug(f"{role}: decoded {output_model.__name__} with {len(sources)} sources")
    return AgentResult(data=result.value, sources=sources)
