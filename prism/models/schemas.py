from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field, model_validator

from prism.models.results import (
    AnalysisInput,
    CamelModel,
    CustomPrompts,
    ModelChoice,
    PrismResult,
    SocialLanguage,
)


# --- Requests ---


class AnalyzeRequest(CamelModel):
    input: AnalysisInput
    custom_prompts: CustomPrompts | None = None
    debug: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_flat_input(cls, value: Any) -> Any:
        # Older clients posted the AnalysisInput fields at the top level.
        if isinstance(value, dict) and value.get("input") is None:
            return {**value, "input": value}
        return value


class RegenerateAction(StrEnum):
    ADD_LANGUAGES = "add-languages"
    REGENERATE_PHASES = "regenerate-phases"


class RegenerateRequest(CamelModel):
    action: str = ""
    input: AnalysisInput = Field(default_factory=AnalysisInput)
    phase1_summary: str = ""
    model_id: ModelChoice | None = None
    custom_prompts: CustomPrompts | None = None
    # add-languages
    existing_keywords: list[str] = Field(default_factory=list)
    direction: str | None = None
    # regenerate-phases
    selected_languages: list[SocialLanguage] | None = None
    market_redefinition: str = ""

    @model_validator(mode="before")
    @classmethod
    def _coerce_model_id(cls, value: Any) -> Any:
        if isinstance(value, dict) and value.get("modelId") is not None:
            coerced = AnalysisInput(model=value["modelId"]).model
            return {**value, "modelId": coerced}
        return value

    @property
    def model(self) -> ModelChoice:
        return self.model_id or self.input.model


# --- Responses ---


class AddLanguagesResponse(CamelModel):
    languages: list[SocialLanguage]


class HistoryEntry(CamelModel):
    id: str
    timestamp: str
    input: AnalysisInput
    result: PrismResult


class HistoryResponse(CamelModel):
    entries: list[HistoryEntry]


class ModelInfo(CamelModel):
    id: str
    model_id: str
    name: str
    description: str


class ModelsResponse(CamelModel):
    models: list[ModelInfo]
    default_model: ModelChoice = ModelChoice.FAST
    research_depths: list[str] = []
    gemini_configured: bool = False
