from __future__ import annotations

from typing import AsyncGenerator

from prism.llm_client import LanguageModelClient
from prism.models.events import SSEEvent
from prism.models.results import (
    AnalysisInput,
    DeepListeningResult,
    OutputGeneration,
    PositioningPart,
    PressReleasePart,
    ReportSummaryPart,
    SocialLanguage,
    SurveyDesign,
)
from prism.services import streaming
from prism.services.progress import ProgressPlan
from prism.services.prompt_store import (
    PromptSet,
    build_phase3_prompt,
    build_phase4_prompt,
    build_phase4a_prompt,
    build_phase4b_prompt,
    build_phase4c_prompt,
)

# Phases 3-4 always work from this many social languages.
SELECTED_LANGUAGE_COUNT = 3


def summarize_phase1(result: DeepListeningResult) -> str:
    hacks = "\n".join(f"- {voice.text}" for voice in result.positive_hacks)
    pains = "\n".join(f"- {voice.text}" for voice in result.negative_pains)
    return (
        f"ポジティブ・ハック:\n{hacks}\n\n"
        f"ネガティブ・ペイン:\n{pains}\n\n"
        f"市場の再定義: {result.market_redefinition}"
    )


def summarize_social_languages(languages: list[SocialLanguage]) -> str:
    return "\n\n".join(
        f"{idx}. {language.keyword}\n   ストーリー: {language.story}\n   ファクト: {language.fact}"
        for idx, language in enumerate(languages, start=1)
    )


def summarize_survey(survey: SurveyDesign) -> str:
    quantitative = "\n".join(f"{idx}. {q}" for idx, q in enumerate(survey.quantitative, start=1))
    qualitative = "\n".join(f"{idx}. {q}" for idx, q in enumerate(survey.qualitative, start=1))
    return f"定量設問:\n{quantitative}\n\n定性設問:\n{qualitative}"


class OutputPhases:
    """Phase 3 (survey design) and Phase 4 (outputs) over chosen languages.

    Shared by the full pipeline and by regeneration. Regeneration always
    uses the three Phase-4 sub-calls, whatever the custom templates say.
    After ``run`` finishes, ``survey`` and ``output`` hold the two results.
    """

    def __init__(
        self,
        llm: LanguageModelClient,
        prompts: PromptSet,
        data: AnalysisInput,
        plan: ProgressPlan,
        *,
        split_phase4: bool | None = None,
    ):
        self.llm = llm
        self.prompts = prompts
        self.data = data
        self.plan = plan
        self.split_phase4 = prompts.split_phase4 if split_phase4 is None else split_phase4
        self.survey: SurveyDesign | None = None
        self.output: OutputGeneration | None = None

    async def _generate(self, prompt: str, response_type: type, caller: str):
        return await self.llm.generate_json(
            prompt,
            model=self.data.model,
            system_prompt=self.prompts.system_prompt,
            response_type=response_type,
            caller=caller,
        )

    async def run(
        self,
        phase1_summary: str,
        market_redefinition: str,
        languages: list[SocialLanguage],
    ) -> AsyncGenerator[SSEEvent, None]:
        social_languages = summarize_social_languages(languages)

        yield streaming.progress(3, self.plan.phase3_start, "社会言語を証明する調査を設計中...")
        survey: SurveyDesign = await self._generate(
            build_phase3_prompt(self.prompts, self.data, social_languages),
            SurveyDesign,
            "phase3",
        )
        self.survey = survey
        yield streaming.progress(3, self.plan.phase3_done, "調査設計が完了しました。アウトプットを生成中...")
        yield streaming.phase_result(3, survey)

        survey_design = summarize_survey(survey)
        if self.split_phase4:
            summary: ReportSummaryPart = await self._generate(
                build_phase4a_prompt(self.data, phase1_summary, social_languages, survey_design),
                ReportSummaryPart,
                "phase4.report_summary",
            )
            yield streaming.progress(
                4, self.plan.phase4_done[0], "レポートサマリを作成しました。プレスリリースを作成中..."
            )
            release: PressReleasePart = await self._generate(
                build_phase4b_prompt(self.data, market_redefinition, social_languages),
                PressReleasePart,
                "phase4.press_release",
            )
            yield streaming.progress(
                4, self.plan.phase4_done[1], "プレスリリースを作成しました。ポジショニングを提案中..."
            )
            positioning: PositioningPart = await self._generate(
                build_phase4c_prompt(self.data, social_languages),
                PositioningPart,
                "phase4.positioning",
            )
            output = OutputGeneration(
                report_summary=summary.report_summary,
                press_release=release.press_release,
                positioning=positioning.positioning,
                news_headline=positioning.news_headline,
            )
        else:
            output = await self._generate(
                build_phase4_prompt(
                    self.prompts,
                    self.data,
                    phase1_summary,
                    social_languages,
                    survey_design,
                    market_redefinition,
                ),
                OutputGeneration,
                "phase4",
            )

        self.output = output
        yield streaming.progress(4, self.plan.phase4_done[2], "アウトプット生成が完了しました")
        yield streaming.phase_result(4, output)
