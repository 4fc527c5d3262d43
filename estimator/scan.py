"""Master scan: build a business profile from a website URL.

Stage 1 (Digital Investigator) identifies the business with web search.
Stage 2 (Market Analyst, Pricing Strategist, Content Copywriter) runs
concurrently on the investigator's findings; the first failure cancels
the other two. Reports are applied to the profile in that fixed order, so
on overlapping fields the copywriter wins.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any

from loguru import logger

from estimator.agents import (
    AgentResult,
    BrandingReport,
    InvestigatorReport,
    MarketReport,
    PricingReport,
    call_agent,
)
from estimator.config import GEMINI_MODEL, GEMINI_PRO_MODEL, SCAN_COOLDOWN_SECONDS
from estimator.models import BusinessProfile, RetryPolicy
from estimator.utils import retry_request

if TYPE_CHECKING:
    from google import genai

INVESTIGATOR = "Digital Investigator"
MARKET_ANALYST = "Market Analyst"
PRICING_STRATEGIST = "Pricing Strategist"
COPYWRITER = "Content Copywriter"


# =============================================================================
# Agents
# =============================================================================


async def investigator_agent(
    client: genai.Client, url: str, custom_instruction: str
) -> AgentResult[InvestigatorReport]:
    prompt = f"""Scan URL: {url}.
    Custom Instructions: {custom_instruction or 'None'}
    Extract: Business Name, Industry, Main Services, Primary Location (City/State), and Decision Maker."""
    return await call_agent(
        client, INVESTIGATOR, prompt, InvestigatorReport, use_retrieval=True, model=GEMINI_MODEL
    )


async def market_analyst_agent(
    client: genai.Client, business: InvestigatorReport
) -> AgentResult[MarketReport]:
    prompt = f"""Research the market for {business.industry} in {business.city_location or 'the local area'}.
    Identify typical customer pain points and standard service offerings.
    Suggest questions a visitor might ask when requesting a quote."""
    return await call_agent(
        client, MARKET_ANALYST, prompt, MarketReport, use_retrieval=True, model=GEMINI_MODEL
    )


async def pricing_strategist_agent(
    client: genai.Client, business: InvestigatorReport
) -> AgentResult[PricingReport]:
    prompt = f"""Create a pricing model for {business.name} ({business.industry}).
    Services: {', '.join(business.services)}.
    Include: General pricing rules and a specific manual price list of 5-10 common items."""
    return await call_agent(client, PRICING_STRATEGIST, prompt, PricingReport, model=GEMINI_PRO_MODEL)


async def copywriter_agent(
    client: genai.Client, business: InvestigatorReport
) -> AgentResult[BrandingReport]:
    prompt = f"""Create high-converting brand details for {business.name}.
    Generate: Header Title, Subtitle, Brand Color (hex), Widget Icon choice,
    and 3-4 High-Value Upsell Packages with a unique id each."""
    return await call_agent(client, COPYWRITER, prompt, BrandingReport, model=GEMINI_MODEL)


# =============================================================================
# Orchestrator
# =============================================================================


async def scan(
    client: genai.Client,
    url: str,
    custom_instruction: str = "",
    *,
    policy: RetryPolicy | None = None,
    cooldown: float = SCAN_COOLDOWN_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BusinessProfile:
    """Run every scan agent against ``url`` and merge their reports.

    Args:
        client: Gemini client
        url: Business website to investigate
        custom_instruction: Extra guidance passed to the investigator
        policy: Retry policy applied to each agent call
        cooldown: Seconds to wait between stages to stay under the RPM ceiling
        sleep: Awaitable used for the cooldown and for retry backoff

    Returns:
        A new profile. Scans are all-or-nothing: if any agent fails, its
        error (tagged with ``.stage``) is raised and nothing is returned.
    """
    logger.info(f"Scan started for {url}")

    def run(
        stage: str, agent: Callable[[], Awaitable[AgentResult]]
    ) -> Coroutine[Any, Any, AgentResult]:
        return retry_request(agent, policy, stage=stage, sleep=sleep)

    investigation = await run(
        INVESTIGATOR, lambda: investigator_agent(client, url, custom_instruction)
    )
    business = investigation.data
    logger.info(
        f"Investigator identified {business.name!r} ({business.industry}); "
        f"cooling down {cooldown:.1f}s"
    )

    await sleep(cooldown)

    stage_two = [
        asyncio.create_task(
            run(MARKET_ANALYST, lambda: market_analyst_agent(client, business)), name=MARKET_ANALYST
        ),
        asyncio.create_task(
            run(PRICING_STRATEGIST, lambda: pricing_strategist_agent(client, business)),
            name=PRICING_STRATEGIST,
        ),
        asyncio.create_task(
            run(COPYWRITER, lambda: copywriter_agent(client, business)), name=COPYWRITER
        ),
    ]
    try:
        await asyncio.wait(stage_two, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        # siblings still calling or backing off
        for task in stage_two:
            if not task.done():
                task.cancel()
        await asyncio.gather(*stage_two, return_exceptions=True)

    for task in stage_two:
        if not task.cancelled() and task.exception():
            logger.error(f"Scan of {url} failed at {task.get_name()}: {task.exception()}")
            raise task.exception()

    market, pricing, branding = (task.result() for task in stage_two)

    profile = BusinessProfile()
    for result in (investigation, market, pricing, branding):
        profile.apply(result.data)

    for service in profile.curated_recommendations:
        service.is_approved = False
    profile.intelligence_sources = list(investigation.sources)

    logger.info(
        f"Scan finished for {profile.name!r}: {len(profile.manual_price_list)} price items, "
        f"{len(profile.curated_recommendations)} draft upsells, "
        f"{len(profile.intelligence_sources)} sources"
    )
    return profile
