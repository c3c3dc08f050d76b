from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o-mini"
    llm_phase_models: dict[str, str] = {}  # {"Ingest.Extract": "anthropic/claude-..."}
    llm_max_tokens: int = 4096

    # Fetch
    ingest_user_agent: str = "CookbookIngestAgent/1.0"
    fetch_timeout_seconds: float = 30.0
    fetch_max_retries: int = 2
    fetch_max_bytes: int = 5 * 1024 * 1024
    respect_robots_txt: bool = True
    max_artifact_bytes: int = 1024 * 1024

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_failure_window_minutes: int = 10
    circuit_block_duration_minutes: int = 30

    # Extraction
    content_char_budget: int = 60000
    extract_max_repair_attempts: int = 2

    # Paraphrase guardrail
    guardrail_token_overlap_warning: int = 40
    guardrail_token_overlap_error: int = 80
    guardrail_ngram_warning: float = 0.20
    guardrail_ngram_error: float = 0.35
    guardrail_ngram_size: int = 5
    guardrail_min_token_length: int = 2
    guardrail_auto_repair: bool = True
    guardrail_max_repair_attempts: int = 2
    guardrail_block_commit_on_violation: bool = False

    # Task lifecycle
    draft_expiration_days: int = 7
    expiration_sweep_interval_minutes: int = 60

    # Search
    search_default_provider: str = "brave"  # brave | google
    search_allow_fallback: bool = False
    max_discovery_candidates: int = 10

    brave_api_key: str = ""
    brave_enabled: bool = True
    brave_endpoint: str = "https://api.search.brave.com/res/v1/web/search"
    brave_max_results: int = 20
    brave_rate_limit_per_minute: int = 60
    brave_market: str = "en-US"
    brave_safe_search: str = "moderate"
    brave_allowed_domains: list[str] = []
    brave_denied_domains: list[str] = []

    google_api_key: str = ""
    google_search_engine_id: str = ""
    google_enabled: bool = False
    google_endpoint: str = "https://www.googleapis.com/customsearch/v1"
    google_max_results: int = 10
    google_rate_limit_per_minute: int = 100
    google_allowed_domains: list[str] = []
    google_denied_domains: list[str] = []

    # Storage
    artifacts_dir: str = ".cache/ingest/artifacts"

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def draft_expiration_seconds(self) -> int:
        return max(int(self.draft_expiration_days), 0) * 24 * 60 * 60

    def model_for_phase(self, phase: str) -> str:
        return self.llm_phase_models.get(phase) or self.default_model


settings = Settings()
