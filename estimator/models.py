"""Data records shared by the scan, estimate and voice flows.

Records travel as camelCase JSON (that is what Gemini is asked to produce and
what the widget sends), while Python code uses snake_case attributes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from estimator.config import RETRY_INITIAL_DELAY, RETRY_MAX_RETRIES

Urgency = Literal["same-day", "next-day", "within-3-days", "flexible"]
WidgetIcon = Literal["calculator", "wrench", "home", "sparkles", "chat", "currency"]


class WireModel(BaseModel):
    """Base model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class IntelligenceSource(WireModel):
    """A web page the investigator grounded its answer on."""

    title: str
    url: str


class ManualPriceItem(WireModel):
    id: str
    label: str
    price: str


class RecommendedService(WireModel):
    """An upsell the business may offer next to a base estimate.

    Only approved services are ever shown to the estimation agent.
    """

    id: str
    label: str
    description: str = ""
    suggested_price: str = ""
    is_approved: bool = False


class BusinessProfile(WireModel):
    """Everything the widget knows about a business.

    A scan builds one from scratch by applying each agent's report in turn;
    the dashboard then edits and persists it outside this package.
    """

    # Identity
    name: str = ""
    industry: str = ""
    city_location: str = ""
    decision_maker: str = ""
    services: list[str] = Field(default_factory=list)

    # Narrative
    pricing_rules: str = ""
    pricing_knowledge_base: str = ""
    custom_agent_instruction: str = ""

    # Merchandising
    header_title: str = ""
    header_subtitle: str = ""
    primary_color: str = ""
    widget_icon: WidgetIcon = "calculator"
    suggested_questions: list[str] = Field(default_factory=list)
    market_trends: list[str] = Field(default_factory=list)

    # Structured lists
    manual_price_list: list[ManualPriceItem] = Field(default_factory=list)
    curated_recommendations: list[RecommendedService] = Field(default_factory=list)

    default_language: str = "en"
    supported_languages: list[str] = Field(default_factory=lambda: ["en"])
    intelligence_sources: list[IntelligenceSource] = Field(default_factory=list)

    def apply(self, report: BaseModel) -> None:
        """Overwrite fields with the ones ``report`` actually carries.

        Fields the report never set, or set to null, leave the profile alone.
        Lists are replaced wholesale.
        """
        for name in report.model_fields_set:
            value = getattr(report, name)
            if value is None or name not in BusinessProfile.model_fields:
                continue
            setattr(self, name, value)

    def approved_upsells(self) -> list[RecommendedService]:
        return [service for service in self.curated_recommendations if service.is_approved]


class EstimateTask(WireModel):
    """A visitor's job description as submitted from the widget."""

    model_config = ConfigDict(frozen=True)

    description: str
    urgency: Urgency = "within-3-days"
    zip_code: str = ""
    image: str | None = None
    language: str | None = None


class EstimationResult(WireModel):
    estimated_cost_range: str
    base_min_cost: float
    base_max_cost: float
    labor_estimate: str
    materials_estimate: str = ""
    time_estimate: str = ""
    tasks: list[str]
    recommendations: list[str] = Field(default_factory=list)
    caveats: list[str] = Field(default_factory=list)
    suggested_upsell_ids: list[str] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return self.base_min_cost <= self.base_max_cost


@dataclass(frozen=True)
class RetryPolicy:
    """How hard to push back against quota errors."""

    max_retries: int = RETRY_MAX_RETRIES
    initial_delay: float = RETRY_INITIAL_DELAY  # seconds
    backoff_multiplier: float = 2.0
