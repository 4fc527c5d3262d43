"""Request helpers shared by every agent call.

This module provides:
- Quota error classification and exponential backoff
- JSON extraction from chatty model replies
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from loguru import logger

from estimator.errors import EstimatorError, MalformedResponseError, UpstreamError, UpstreamQuotaError
from estimator.models import RetryPolicy

T = TypeVar("T")

QUOTA_MARKERS = ("429", "RESOURCE_EXHAUSTED")

# =============================================================================
# Backoff
# =============================================================================


def is_quota_error(error: BaseException) -> bool:
    """Return True when ``error`` signals quota or rate-limit exhaustion."""
    code = getattr(error, "code", None)
    status_code = getattr(error, "status_code", None)
    status = getattr(error, "status", None)
    if 429 in (code, status_code, status) or status == "RESOURCE_EXHAUSTED":
        return True

    text = f"{error!s} {error!r}"
    return any(marker in text for marker in QUOTA_MARKERS)


async def retry_request(
    unit_of_work: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    stage: str | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``unit_of_work``, retrying quota failures with exponential delay.

    Args:
        unit_of_work: Zero-argument coroutine factory, called once per attempt
        policy: Retry budget and delays (default: RetryPolicy())
        stage: Name used in logs and attached to raised errors
        sleep: Awaitable used to wait between attempts

    Returns:
        Whatever ``unit_of_work`` returns on its first successful attempt.

    Raises:
        UpstreamQuotaError: quota errors persisted after every retry
        UpstreamError: any other backend failure (never retried)
        EstimatorError: this package's own errors pass through untouched
    """
    policy = policy or RetryPolicy()
    retries_left = policy.max_retries
    delay = policy.initial_delay
    label = stage or "Gemini request"

    while True:
        try:
            return await unit_of_work()
        except EstimatorError as e:
            if e.stage is None:
                e.stage = stage
            raise
        except Exception as e:
            if not is_quota_error(e):
                raise UpstreamError(f"{label} failed: {e}", cause=e, stage=stage) from e
            if retries_left <= 0:
                raise UpstreamQuotaError(
                    f"{label} still rate limited after {policy.max_retries} retries",
                    cause=e,
                    stage=stage,
                ) from e

            logger.warning(
                f"{label}: quota exceeded. Retrying in {delay:.1f}s... ({retries_left} retries left)"
            )
            await sleep(delay)
            delay *= policy.backoff_multiplier
            retries_left -= 1


# =============================================================================
# JSON extraction
# =============================================================================


def extract_json(raw_text: str) -> str:
    """Cut the JSON object or array out of a model reply.

    Markdown fences and leading prose are dropped by taking the span from the
    first ``{`` to the last ``}`` (or ``[`` to ``]``). The result is not
    guaranteed to parse.
    """
    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1:
        return raw_text[start : end + 1]

    start = raw_text.find("[")
    end = raw_text.rfind("]")
    if start != -1 and end != -1:
        return raw_text[start : end + 1]

    return raw_text.strip()


def parse_json(raw_text: str | None, agent: str) -> Any:
    """Decode the JSON payload of a model reply or raise MalformedResponseError."""
    if not raw_text:
        raise MalformedResponseError(agent, "")
    try:
        return json.loads(extract_json(raw_text))
    except json.JSONDecodeError as e:
        raise MalformedResponseError(agent, raw_text) from e
