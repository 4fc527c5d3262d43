"""Estimation engine: one schema-constrained Gemini call per visitor request."""

from __future__ import annotations

import asyncio
import base64
import binascii
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from google.genai import types
from loguru import logger

from estimator.agents import call_agent
from estimator.config import GEMINI_PRO_MODEL
from estimator.models import BusinessProfile, EstimateTask, EstimationResult, RetryPolicy
from estimator.utils import retry_request

if TYPE_CHECKING:
    from google import genai

ESTIMATOR = "Estimation Agent"


def upsell_context(profile: BusinessProfile) -> str:
    """List the approved upsells the model may pick from, one per line."""
    lines = [
        f"ID: {service.id}, Label: {service.label}, Description: {service.description}"
        for service in profile.approved_upsells()
    ]
    return "\n".join(lines) or "No upsells available."


def build_prompt(task: EstimateTask, profile: BusinessProfile) -> str:
    price_list = "\n".join(f"- {item.label}: {item.price}" for item in profile.manual_price_list)

    return f"""As an AI estimation agent for {profile.name}, calculate costs for the request: "{task.description}".

BUSINESS RULES & LOGIC:
{profile.pricing_rules}
{profile.custom_agent_instruction}

PRICING KNOWLEDGE BASE:
{profile.pricing_knowledge_base or 'None provided.'}

PRICE LIST:
{price_list or 'None provided.'}

DATA FROM USER:
- Zip Code: {task.zip_code}
- Urgency: {task.urgency}
- Language: {task.language or profile.default_language or 'en'}

Apply the business rules step by step, including any minimums, and show your work in the caveats.
Write every narrative field in the user's language.

Select relevant IDs from this list to recommend:
{upsell_context(profile)}"""


def image_part(image: str) -> types.Part:
    """Turn a data URL (or bare base64 JPEG) into an inline image part."""
    mime_type = "image/jpeg"
    data = image
    if image.startswith("data:"):
        header, _, data = image.partition(",")
        mime_type = header[len("data:") :].split(";")[0] or mime_type

    try:
        raw = base64.b64decode(data, validate=True)
    except binascii.Error as e:
        raise ValueError("Task image is not valid base64") from e
    return types.Part.from_bytes(data=raw, mime_type=mime_type)


def filter_upsells(result: EstimationResult, profile: BusinessProfile) -> EstimationResult:
    """Keep only suggested upsell IDs that exist and are approved in ``profile``."""
    approved = {service.id for service in profile.approved_upsells()}
    kept: list[str] = []
    for upsell_id in result.suggested_upsell_ids:
        if upsell_id in approved and upsell_id not in kept:
            kept.append(upsell_id)

    dropped = [upsell_id for upsell_id in result.suggested_upsell_ids if upsell_id not in approved]
    if dropped:
        logger.warning(f"Dropping unknown or unapproved upsell IDs: {dropped}")

    return result.model_copy(update={"suggested_upsell_ids": kept})


async def estimate(
    client: genai.Client,
    task: EstimateTask,
    profile: BusinessProfile,
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> EstimationResult:
    """Estimate the cost of ``task`` using the business rules in ``profile``.

    The result is returned as the model produced it, apart from upsell IDs,
    which are restricted to the profile's approved recommendations. A
    ``base_min_cost`` above ``base_max_cost`` is logged but not corrected.
    """
    prompt = build_prompt(task, profile)
    parts = [image_part(task.image)] if task.image else None

    async def request() -> EstimationResult:
        outcome = await call_agent(
            client, ESTIMATOR, prompt, EstimationResult, model=GEMINI_PRO_MODEL, parts=parts
        )
        return outcome.data

    logger.info(f"Estimating for {profile.name!r}: urgency={task.urgency}, zip={task.zip_code}")
    result = await retry_request(request, policy, stage=ESTIMATOR, sleep=sleep)

    if not result.is_consistent:
        logger.warning(
            f"Estimate range inverted: min={result.base_min_cost} > max={result.base_max_cost}"
        )

    return filter_upsells(result, profile)
