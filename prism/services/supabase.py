from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

from supabase import Client, create_client

from prism.config import settings
from prism.errors import ConfigurationError
from prism.models.results import AnalysisInput, CustomPrompts, PrismResult
from prism.services import logger as log_service

HISTORY_TABLE = "prism_history"
PROMPTS_TABLE = "prism_custom_prompts"
PROMPTS_ROW_ID = "default"
# PostgREST refuses an unfiltered delete.
NIL_UUID = "00000000-0000-0000-0000-000000000000"


def is_configured() -> bool:
    return bool(settings.supabase_url and settings.supabase_anon_key)


def get_client() -> Client:
    if not is_configured():
        raise ConfigurationError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
    return create_client(settings.supabase_url, settings.supabase_anon_key)


_client: Client | None = None


def client() -> Client:
    global _client
    if _client is None:
        _client = get_client()
    return _client


async def _execute(query: Any) -> Any:
    """Run blocking Supabase query execution in a worker thread."""
    return await asyncio.to_thread(query.execute)


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize JSON-string columns into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


# --- History ---


async def save_run(data: AnalysisInput, result: PrismResult) -> dict[str, Any]:
    row = {"input": data.to_wire(), "result": result.to_wire()}
    try:
        inserted = await _execute(client().table(HISTORY_TABLE).insert(row))
        await _trim_history()
    except Exception as e:
        log_service.log_db_operation("insert", HISTORY_TABLE, "failed", error=str(e))
        raise
    log_service.log_db_operation("insert", HISTORY_TABLE, "success", details=data.product_name[:100])
    return inserted.data[0]


async def _trim_history() -> None:
    result = await _execute(
        client().table(HISTORY_TABLE).select("id").order("created_at", desc=True)
    )
    stale = [row["id"] for row in (result.data or [])[settings.history_max_entries :]]
    if stale:
        await _execute(client().table(HISTORY_TABLE).delete().in_("id", stale))
        log_service.log_db_operation("trim", HISTORY_TABLE, "success", details=f"{len(stale)} removed")


async def list_runs() -> list[dict[str, Any]]:
    result = await _execute(
        client()
        .table(HISTORY_TABLE)
        .select("*")
        .order("created_at", desc=True)
        .limit(settings.history_max_entries)
    )
    rows = result.data or []
    return [
        {
            "id": str(row["id"]),
            "timestamp": row.get("created_at") or datetime.now(timezone.utc).isoformat(),
            "input": _coerce_json_object(row.get("input")),
            "result": _coerce_json_object(row.get("result")),
        }
        for row in rows
    ]


async def delete_run(run_id: str) -> None:
    await _execute(client().table(HISTORY_TABLE).delete().eq("id", run_id))
    log_service.log_db_operation("delete", HISTORY_TABLE, "success", details=run_id)


async def clear_all() -> None:
    await _execute(client().table(HISTORY_TABLE).delete().neq("id", NIL_UUID))
    log_service.log_db_operation("clear", HISTORY_TABLE, "success")


# --- Custom prompts ---


async def get_custom_prompts() -> CustomPrompts | None:
    result = await _execute(
        client().table(PROMPTS_TABLE).select("prompts").eq("id", PROMPTS_ROW_ID)
    )
    if not result.data:
        return None
    return CustomPrompts.model_validate(_coerce_json_object(result.data[0].get("prompts")))


async def save_custom_prompts(prompts: CustomPrompts) -> CustomPrompts:
    row = {
        "id": PROMPTS_ROW_ID,
        "prompts": prompts.to_wire(),
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }
    await _execute(client().table(PROMPTS_TABLE).upsert(row))
    log_service.log_db_operation("upsert", PROMPTS_TABLE, "success")
    return prompts


async def reset_custom_prompts() -> None:
    await _execute(client().table(PROMPTS_TABLE).delete().eq("id", PROMPTS_ROW_ID))
    log_service.log_db_operation("delete", PROMPTS_TABLE, "success")
