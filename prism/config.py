from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Gemini
    gemini_api_key: str = ""
    gemini_openai_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    interactions_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    fast_model: str = "gemini-3-flash-preview"
    accurate_model: str = "gemini-3-pro-preview"

    # Research agent (long-running job API)
    deep_research_agent: str = "deep-research-pro-preview-12-2025"
    agent_expected_seconds: float = 600.0
    agent_progress_tick_seconds: float = 5.0
    agent_timeout_seconds: float = 1800.0

    # JSON generation
    json_max_retries: int = 2
    retry_backoff_seconds: float = 1.0

    # Source resolution
    title_fetch_timeout_ms: int = 5000
    title_fetch_limit: int = 20
    title_fetch_max_bytes: int = 16384

    # Research shaping
    deep_research_max_urls: int = 20
    max_segment_hints: int = 40
    max_known_urls_in_prompt: int = 60
    additional_language_count: int = 3

    # Persistence (Supabase)
    supabase_url: str = ""
    supabase_anon_key: str = ""
    history_max_entries: int = 50

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    emit_debug_events: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
