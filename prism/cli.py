"""PRISM - social language discovery

Simple CLI for running one analysis from the terminal.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from prism.agents.orchestrator import PipelineOrchestrator
from prism.errors import PrismError
from prism.llm_client import LanguageModelClient
from prism.models.results import AnalysisInput, ModelChoice, ResearchDepth
from prism.services.prompt_store import PromptSet

PHASE_NAMES = {
    1: "Deep Listening",
    2: "Social Language",
    3: "Evidence Design",
    4: "Output Generation",
}


async def run_analysis(data: AnalysisInput) -> int:
    """Run the pipeline and print its events. Returns the process exit code."""
    print(f"Product: {data.product_name} / {data.category}")
    print(f"Depth: {data.research_depth.value}, model: {data.model.value}")
    print("-" * 50)

    llm = LanguageModelClient.from_settings()
    orchestrator = PipelineOrchestrator(llm)
    exit_code = 1
    try:
        async for event in orchestrator.run(data, PromptSet.from_custom()):
            event_type = event.event.value
            payload = event.data

            if event_type == "progress":
                print(f"[{payload['percent']:>3}%] {payload['message']}")

            elif event_type == "phase_result":
                phase = payload["phase"]
                print(f"  [+] Phase {phase} ({PHASE_NAMES.get(phase, '?')}) complete")
                if phase == 2:
                    for language in payload["data"]:
                        print(f"      - {language['keyword']}")

            elif event_type == "result":
                phase4 = payload["data"]["phase4"]
                print(f"\n{'=' * 50}")
                print(f"HEADLINE: {phase4['newsHeadline']}")
                print(f"{'=' * 50}")
                print(phase4["positioning"])
                exit_code = 0

            elif event_type == "error":
                print(f"\n[!] Error: {payload.get('error', 'Unknown error')}")
    finally:
        await llm.aclose()
    return exit_code


def main():
    parser = argparse.ArgumentParser(description="PRISM social language discovery")
    parser.add_argument("--product", "-p", required=True, help="Product name")
    parser.add_argument("--category", "-c", required=True, help="Product category")
    parser.add_argument("--challenges", required=True, help="Features and current challenges")
    parser.add_argument(
        "--model",
        "-m",
        choices=[choice.value for choice in ModelChoice],
        default=ModelChoice.FAST.value,
        help="Model tier (default: fast)",
    )
    parser.add_argument(
        "--depth",
        "-d",
        choices=[depth.value for depth in ResearchDepth],
        default=ResearchDepth.STANDARD.value,
        help="Research strategy (default: standard)",
    )
    parser.add_argument("--manual-file", type=Path, help="Research text for --depth manual")

    args = parser.parse_args()

    manual_data = None
    if args.manual_file:
        manual_data = args.manual_file.read_text(encoding="utf-8")

    data = AnalysisInput(
        product_name=args.product,
        category=args.category,
        challenges=args.challenges,
        model=args.model,
        research_depth=args.depth,
        manual_research_data=manual_data,
    )
    if data.missing_fields():
        parser.error("--product, --category and --challenges must not be empty")
    if data.research_depth == ResearchDepth.MANUAL and not manual_data:
        parser.error("--depth manual requires --manual-file")

    try:
        sys.exit(asyncio.run(run_analysis(data)))
    except PrismError as e:
        print(f"[!] {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
