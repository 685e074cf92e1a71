from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire records use camelCase keys; Python attributes stay snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ModelChoice(StrEnum):
    FAST = "fast"
    ACCURATE = "accurate"


class ResearchDepth(StrEnum):
    STANDARD = "standard"
    DEEP = "deep"
    MANUAL = "manual"
    AGENT = "agent"


class AnalysisInput(CamelModel):
    product_name: str = ""
    category: str = ""
    challenges: str = ""
    model: ModelChoice = ModelChoice.FAST
    research_depth: ResearchDepth = ResearchDepth.STANDARD
    manual_research_data: str | None = None

    @field_validator("product_name", "category", "challenges", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("model", mode="before")
    @classmethod
    def _coerce_model(cls, value: Any) -> Any:
        # Raw model ids from older clients map back onto the enum; anything
        # unrecognised falls back to the fast model.
        from prism.config import settings

        if value == settings.accurate_model or value == ModelChoice.ACCURATE:
            return ModelChoice.ACCURATE
        return ModelChoice.FAST

    @field_validator("research_depth", mode="before")
    @classmethod
    def _coerce_depth(cls, value: Any) -> Any:
        if value in (None, ""):
            return ResearchDepth.STANDARD
        if value == "api-deep-research":
            return ResearchDepth.AGENT
        return value

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("product_name", "category", "challenges")
            if not getattr(self, name)
        ]


class VoiceItem(CamelModel):
    text: str
    source_url: str = ""
    source_title: str = ""

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"text": value}
        return value

    @field_validator("source_url", "source_title", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class GroundingSource(CamelModel):
    title: str = ""
    url: str


class GroundingSegment(CamelModel):
    text: str
    sources: list[GroundingSource] = Field(default_factory=list)


class DeepListeningResult(CamelModel):
    positive_hacks: list[VoiceItem] = Field(default_factory=list)
    negative_pains: list[VoiceItem] = Field(default_factory=list)
    market_redefinition: str = ""


class SocialLanguage(CamelModel):
    keyword: str
    story: str = ""
    fact: str = ""


class SurveyDesign(CamelModel):
    quantitative: list[str] = Field(default_factory=list)
    qualitative: list[str] = Field(default_factory=list)


class ReportSummaryPart(CamelModel):
    report_summary: str


class PressReleasePart(CamelModel):
    press_release: str


class PositioningPart(CamelModel):
    positioning: str
    news_headline: str


class OutputGeneration(CamelModel):
    report_summary: str = ""
    press_release: str = ""
    positioning: str = ""
    news_headline: str = ""


class PrismResult(CamelModel):
    input: AnalysisInput
    phase1: DeepListeningResult
    phase2: list[SocialLanguage]
    phase3: SurveyDesign
    phase4: OutputGeneration
    grounding_sources: list[GroundingSource] = Field(default_factory=list)


class IterationEntry(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    selected_languages: list[SocialLanguage]
    phase3: SurveyDesign
    phase4: OutputGeneration


class CustomPrompts(CamelModel):
    system_prompt: str = ""
    phase1_template: str = ""
    phase2_template: str = ""
    phase3_template: str = ""
    phase4_template: str = ""
