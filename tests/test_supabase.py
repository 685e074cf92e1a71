from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from prism.models.results import (
    AnalysisInput,
    CustomPrompts,
    DeepListeningResult,
    OutputGeneration,
    PrismResult,
    SurveyDesign,
)
from prism.services import supabase as db


def _result(data):
    return SimpleNamespace(data=data)


def _prism_result(data: AnalysisInput) -> PrismResult:
    return PrismResult(
        input=data,
        phase1=DeepListeningResult(),
        phase2=[],
        phase3=SurveyDesign(),
        phase4=OutputGeneration(),
    )


@pytest.mark.asyncio
async def test_save_run_inserts_and_trims_history():
    data = AnalysisInput(product_name="X", category="Y", challenges="Z")
    ids = [{"id": f"id-{i}"} for i in range(52)]
    execute = AsyncMock(side_effect=[_result([{"id": "new"}]), _result(ids), _result([])])

    with patch("prism.services.supabase.client") as client, patch(
        "prism.services.supabase._execute", new=execute
    ), patch.object(db.settings, "history_max_entries", 50):
        row = await db.save_run(data, _prism_result(data))

    assert row == {"id": "new"}
    table = client.return_value.table.return_value
    inserted = table.insert.call_args.args[0]
    assert inserted["input"]["productName"] == "X"
    assert inserted["result"]["phase4"]["newsHeadline"] == ""
    table.delete.return_value.in_.assert_called_once_with("id", ["id-50", "id-51"])
    assert execute.await_count == 3


@pytest.mark.asyncio
async def test_list_runs_normalises_json_columns():
    rows = [
        {
            "id": "r1",
            "created_at": "2026-01-01T00:00:00+00:00",
            "input": '{"productName": "X"}',
            "result": {"phase1": {}},
        }
    ]
    with patch("prism.services.supabase.client"), patch(
        "prism.services.supabase._execute", new=AsyncMock(return_value=_result(rows))
    ):
        entries = await db.list_runs()

    assert entries == [
        {
            "id": "r1",
            "timestamp": "2026-01-01T00:00:00+00:00",
            "input": {"productName": "X"},
            "result": {"phase1": {}},
        }
    ]


@pytest.mark.asyncio
async def test_custom_prompts_absent_and_present():
    execute = AsyncMock(
        side_effect=[
            _result([]),
            _result([{"prompts": {"systemPrompt": "S", "phase2Template": "{{phase1Summary}}"}}]),
        ]
    )
    with patch("prism.services.supabase.client"), patch("prism.services.supabase._execute", new=execute):
        assert await db.get_custom_prompts() is None
        stored = await db.get_custom_prompts()

    assert stored == CustomPrompts(system_prompt="S", phase2_template="{{phase1Summary}}")


def test_unconfigured_client_is_a_configuration_error():
    from prism.errors import ConfigurationError

    with patch.object(db.settings, "supabase_url", ""):
        assert db.is_configured() is False
        with pytest.raises(ConfigurationError):
            db.get_client()
