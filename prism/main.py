from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prism.api.routes import analyze, history, models, prompts, regenerate
from prism.config import settings
from prism.llm_client import LanguageModelClient
from prism.services.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    app.state.llm_client = LanguageModelClient.from_settings()
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; analysis requests will fail")
    yield
    # Shutdown
    await app.state.llm_client.aclose()


app = FastAPI(
    title="PRISM",
    description="Social language discovery pipeline powered by Gemini",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(analyze.router)
app.include_router(regenerate.router)
app.include_router(history.router)
app.include_router(prompts.router)
app.include_router(models.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "prism"}
