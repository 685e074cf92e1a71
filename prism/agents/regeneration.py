from __future__ import annotations

from typing import AsyncGenerator

from prism.agents.phases import SELECTED_LANGUAGE_COUNT, OutputPhases
from prism.config import settings
from prism.errors import InputValidationError
from prism.llm_client import LanguageModelClient
from prism.models.events import SSEEvent
from prism.models.results import AnalysisInput, IterationEntry, SocialLanguage
from prism.services import logger as log_service
from prism.services import streaming
from prism.services.logger import logger
from prism.services.progress import REGENERATION_PLAN
from prism.services.prompt_store import PromptSet, build_phase2_additional_prompt

SELECTION_ERROR = "3つの社会言語を選択してください。"


class RegenerationController:
    """Iterate on a finished run without repeating its research."""

    def __init__(self, llm: LanguageModelClient):
        self.llm = llm
        self.entry: IterationEntry | None = None

    async def add_language_candidates(
        self,
        data: AnalysisInput,
        prompts: PromptSet,
        phase1_summary: str,
        existing_keywords: list[str],
        direction: str | None = None,
        *,
        count: int | None = None,
    ) -> list[SocialLanguage]:
        """Generate new social languages that avoid ``existing_keywords``."""
        count = settings.additional_language_count if count is None else count
        languages: list[SocialLanguage] = await self.llm.generate_json(
            build_phase2_additional_prompt(data, phase1_summary, existing_keywords, direction, count),
            model=data.model,
            system_prompt=prompts.system_prompt,
            response_type=list[SocialLanguage],
            caller="phase2.additional",
        )
        log_service.log_event(
            event_type="languages_added",
            message="Additional social languages generated",
            requested=count,
            returned=len(languages),
        )
        return languages

    @staticmethod
    def check_selection(selected: list[SocialLanguage] | None) -> list[SocialLanguage]:
        if selected is None or len(selected) != SELECTED_LANGUAGE_COUNT:
            raise InputValidationError(SELECTION_ERROR)
        return selected

    async def regenerate_phases(
        self,
        data: AnalysisInput,
        prompts: PromptSet,
        selected: list[SocialLanguage] | None,
        phase1_summary: str,
        market_redefinition: str,
    ) -> AsyncGenerator[SSEEvent, None]:
        """Re-run phases 3 and 4 for the chosen languages.

        Raises InputValidationError before any model call unless exactly
        three languages are selected. Model failures end the stream with a
        single ``error`` event, like the full pipeline.
        """
        languages = self.check_selection(selected)
        outputs = OutputPhases(self.llm, prompts, data, REGENERATION_PLAN, split_phase4=True)
        try:
            async for event in outputs.run(phase1_summary, market_redefinition, languages):
                yield event
        except Exception as exc:
            logger.exception(f"Regeneration failed: {exc}")
            yield streaming.error(str(exc) or type(exc).__name__)
            return

        self.entry = IterationEntry(
            selected_languages=languages,
            phase3=outputs.survey,
            phase4=outputs.output,
        )
        log_service.log_event(
            event_type="phases_regenerated",
            message="Phases 3-4 regenerated",
            iteration_id=self.entry.id,
            keywords=[language.keyword for language in languages],
        )
        yield streaming.result(self.entry)
