from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from prism.errors import PromptTemplateError
from prism.models.results import AnalysisInput, CustomPrompts


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

_catalog_cache: dict[str, Any] | None = None
_catalog_mtime_ns: int | None = None

# Variables each user-editable phase template may reference.
PHASE_VARIABLES: dict[str, frozenset[str]] = {
    "phase1": frozenset({"productName", "category", "challenges"}),
    "phase2": frozenset({"productName", "category", "challenges", "phase1Summary"}),
    "phase3": frozenset({"productName", "category", "challenges", "socialLanguages"}),
    "phase4": frozenset(
        {
            "productName",
            "category",
            "challenges",
            "phase1Summary",
            "socialLanguages",
            "surveyDesign",
            "marketRedefinition",
        }
    ),
}

KNOWN_PLACEHOLDERS: frozenset[str] = frozenset().union(
    *PHASE_VARIABLES.values(),
    {
        "researchData",
        "sourceHints",
        "knownUrls",
        "sourceCount",
        "excludedKeywords",
        "direction",
        "count",
    },
)


def _load_catalog() -> dict[str, Any]:
    global _catalog_cache, _catalog_mtime_ns
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _catalog_cache is not None and _catalog_mtime_ns == mtime_ns:
        return _catalog_cache

    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Prompt catalog must be a JSON object.")
    _catalog_cache = payload
    _catalog_mtime_ns = mtime_ns
    return payload


def _resolve_prompt_entry(key: str) -> str:
    node: Any = _load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    if not isinstance(node, str):
        raise TypeError(f"Prompt key must map to a string: {key}")
    return node


def prompt_keys(prefix: str) -> list[str]:
    """List the string entries below ``prefix`` in catalog order."""
    node: Any = _load_catalog()
    for part in prefix.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {prefix}")
        node = node[part]
    if not isinstance(node, dict):
        raise TypeError(f"Prompt key must map to a group: {prefix}")
    return [f"{prefix}.{name}" for name, value in node.items() if isinstance(value, str)]


def placeholders(template: str) -> set[str]:
    return set(PLACEHOLDER_PATTERN.findall(template))


def fill_template(template: str, values: Mapping[str, Any], *, name: str = "template") -> str:
    """Replace every ``{{name}}`` placeholder with its value.

    Placeholders that are not known variables are left as-is. A known
    variable that appears in the template but is missing from ``values``
    raises PromptTemplateError.
    """

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return str(values[key])
        if key in KNOWN_PLACEHOLDERS:
            raise PromptTemplateError(f"Missing template value '{key}' for prompt '{name}'")
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, template)


def render_prompt(key: str, **values: Any) -> str:
    return fill_template(_resolve_prompt_entry(key), values, name=key)


def validate_template(template: str, phase: str) -> None:
    """Reject templates that reference variables the phase cannot supply."""
    allowed = PHASE_VARIABLES[phase]
    unavailable = sorted((placeholders(template) & KNOWN_PLACEHOLDERS) - allowed)
    if unavailable:
        raise PromptTemplateError(
            f"{phase} template references unavailable variables: {', '.join(unavailable)}"
        )


def clear_prompt_cache() -> None:
    global _catalog_cache, _catalog_mtime_ns
    _catalog_cache = None
    _catalog_mtime_ns = None


def get_default_prompts() -> CustomPrompts:
    return CustomPrompts(
        system_prompt=render_prompt("system"),
        phase1_template=_resolve_prompt_entry("phase1.task"),
        phase2_template=_resolve_prompt_entry("phase2.task"),
        phase3_template=_resolve_prompt_entry("phase3.task"),
        phase4_template=_resolve_prompt_entry("phase4.full"),
    )


@dataclass(frozen=True)
class PromptSet:
    """Prompts for one run: built-in defaults with per-phase overrides."""

    system_prompt: str
    phase1_template: str
    phase2_template: str
    phase3_template: str
    phase4_template: str | None = None

    @classmethod
    def from_custom(cls, custom: CustomPrompts | None = None) -> PromptSet:
        custom = custom or CustomPrompts()
        return cls(
            system_prompt=custom.system_prompt or render_prompt("system"),
            phase1_template=custom.phase1_template or _resolve_prompt_entry("phase1.task"),
            phase2_template=custom.phase2_template or _resolve_prompt_entry("phase2.task"),
            phase3_template=custom.phase3_template or _resolve_prompt_entry("phase3.task"),
            phase4_template=custom.phase4_template or None,
        )

    @property
    def split_phase4(self) -> bool:
        return self.phase4_template is None

    def validate(self) -> None:
        validate_template(self.phase1_template, "phase1")
        validate_template(self.phase2_template, "phase2")
        validate_template(self.phase3_template, "phase3")
        if self.phase4_template is not None:
            validate_template(self.phase4_template, "phase4")


def _input_values(data: AnalysisInput) -> dict[str, str]:
    return {
        "productName": data.product_name,
        "category": data.category,
        "challenges": data.challenges,
    }


def build_search_queries(data: AnalysisInput) -> list[str]:
    return [render_prompt(key, **_input_values(data)) for key in prompt_keys("research.angles")]


def build_phase1_prompt(
    prompts: PromptSet,
    data: AnalysisInput,
    depth: str,
    **context: Any,
) -> str:
    task = fill_template(prompts.phase1_template, _input_values(data), name="phase1")
    research_context = render_prompt(f"phase1.context.{depth}", **context)
    return f"{task}\n\n{research_context}"


def build_agent_research_prompt(data: AnalysisInput) -> str:
    return render_prompt("phase1.agent_research", **_input_values(data))


def build_restructure_prompt(raw_text: str) -> str:
    return render_prompt("phase1.restructure", researchData=raw_text)


def build_phase2_prompt(prompts: PromptSet, data: AnalysisInput, phase1_summary: str) -> str:
    return fill_template(
        prompts.phase2_template,
        {**_input_values(data), "phase1Summary": phase1_summary},
        name="phase2",
    )


def build_phase2_additional_prompt(
    data: AnalysisInput,
    phase1_summary: str,
    existing_keywords: list[str],
    direction: str | None,
    count: int,
) -> str:
    excluded = "\n".join(f"- {keyword}" for keyword in existing_keywords) or "（なし）"
    return render_prompt(
        "phase2.additional",
        **_input_values(data),
        phase1Summary=phase1_summary,
        excludedKeywords=excluded,
        direction=(direction or "").strip() or "特になし（自由な発想で）",
        count=count,
    )


def build_phase3_prompt(prompts: PromptSet, data: AnalysisInput, social_languages: str) -> str:
    return fill_template(
        prompts.phase3_template,
        {**_input_values(data), "socialLanguages": social_languages},
        name="phase3",
    )


def build_phase4_prompt(
    prompts: PromptSet,
    data: AnalysisInput,
    phase1_summary: str,
    social_languages: str,
    survey_design: str,
    market_redefinition: str,
) -> str:
    template = prompts.phase4_template or _resolve_prompt_entry("phase4.full")
    return fill_template(
        template,
        {
            **_input_values(data),
            "phase1Summary": phase1_summary,
            "socialLanguages": social_languages,
            "surveyDesign": survey_design,
            "marketRedefinition": market_redefinition,
        },
        name="phase4",
    )


def build_phase4a_prompt(
    data: AnalysisInput,
    phase1_summary: str,
    social_languages: str,
    survey_design: str,
) -> str:
    return render_prompt(
        "phase4.report_summary",
        **_input_values(data),
        phase1Summary=phase1_summary,
        socialLanguages=social_languages,
        surveyDesign=survey_design,
    )


def build_phase4b_prompt(data: AnalysisInput, market_redefinition: str, social_languages: str) -> str:
    return render_prompt(
        "phase4.press_release",
        **_input_values(data),
        marketRedefinition=market_redefinition,
        socialLanguages=social_languages,
    )


def build_phase4c_prompt(data: AnalysisInput, social_languages: str) -> str:
    return render_prompt("phase4.positioning", **_input_values(data), socialLanguages=social_languages)
