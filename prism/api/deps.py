from __future__ import annotations

import json
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from prism.config import settings
from prism.errors import InputValidationError
from prism.llm_client import LanguageModelClient
from prism.services import supabase as db

INVALID_REQUEST = "不正なリクエストです。"


def get_available_models() -> list[dict[str, str]]:
    """Return the selectable Gemini models."""
    return [
        {
            "id": "fast",
            "model_id": settings.fast_model,
            "name": "Gemini 3 Flash",
            "description": "高速モデル。標準的な分析を短時間で実行します。",
        },
        {
            "id": "accurate",
            "model_id": settings.accurate_model,
            "name": "Gemini 3 Pro",
            "description": "高精度モデル。時間はかかりますが、より深い洞察を生成します。",
        },
    ]


def get_llm_client(request: Request) -> LanguageModelClient:
    return request.app.state.llm_client


def require_persistence() -> None:
    if not db.is_configured():
        raise HTTPException(status_code=503, detail="Persistence is not configured")


def error_response(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InputValidationError(INVALID_REQUEST) from None
