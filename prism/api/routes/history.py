from __future__ import annotations

from fastapi import APIRouter, Depends

from prism.api.deps import require_persistence
from prism.services import supabase as db

router = APIRouter(
    prefix="/api/history",
    tags=["history"],
    dependencies=[Depends(require_persistence)],
)


@router.get("")
async def list_history():
    """Past analysis runs, newest first."""
    return {"entries": await db.list_runs()}


@router.delete("/{run_id}")
async def delete_history_entry(run_id: str):
    await db.delete_run(run_id)
    return {"status": "deleted", "id": run_id}


@router.delete("")
async def clear_history():
    await db.clear_all()
    return {"status": "cleared"}
