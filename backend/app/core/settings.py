import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./sql_app.db") or "sqlite:///./sql_app.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.admin_api_key = _getenv("ADMIN_API_KEY")

        self.mma_enabled = _getenv_bool("MMA_ENABLED", default=True)
        self.default_free_credits = max(0, _getenv_int("DEFAULT_FREE_CREDITS", 0))
        self.default_credits_expire_days = max(1, _getenv_int("DEFAULT_CREDITS_EXPIRE_DAYS", 30))
        self.passid_hash_email = _getenv_bool("MMA_PASSID_HASH_EMAIL", default=False)

        self.llm_api_key = _getenv("LLM_API_KEY") or _getenv("OPENAI_API_KEY")
        self.llm_base_url = _getenv("LLM_BASE_URL")
        self.llm_model = _getenv("LLM_MODEL", "gpt-4o-mini") or "gpt-4o-mini"
        self.llm_temperature = _getenv_float("LLM_TEMPERATURE", 0.2)
        self.llm_max_retries = max(1, _getenv_int("LLM_MAX_RETRIES", 4))
        self.llm_retry_base_s = _getenv_float("LLM_RETRY_BASE_S", 0.7)

        self.replicate_api_token = _getenv("REPLICATE_API_TOKEN")
        self.replicate_base_url = (
            _getenv("REPLICATE_BASE_URL", "https://api.replicate.com/v1") or "https://api.replicate.com/v1"
        )
        self.replicate_max_ms = _getenv_int("MMA_REPLICATE_MAX_MS", 900000)
        self.replicate_poll_ms = _getenv_int("MMA_REPLICATE_POLL_MS", 2500)
        self.replicate_call_timeout_ms = _getenv_int("MMA_REPLICATE_CALL_TIMEOUT_MS", 15000)
        self.replicate_cancel_on_timeout = _getenv_bool("MMA_REPLICATE_CANCEL_ON_TIMEOUT", default=False)

        self.seedream_version = _getenv("MMA_SEADREAM_VERSION", "bytedance/seedream-4") or "bytedance/seedream-4"
        self.seedream_size = _getenv("MMA_SEADREAM_SIZE", "2K") or "2K"
        self.seedream_aspect_ratio = _getenv("MMA_SEADREAM_ASPECT_RATIO", "match_input_image") or "match_input_image"
        self.seedream_negative_prompt = _getenv("MMA_NEGATIVE_PROMPT_SEADREAM", "") or ""
        self.seedream_enhance_prompt = _getenv_bool("MMA_SEADREAM_ENHANCE_PROMPT", default=True)

        # unset means the niche lane falls back to seedream
        self.nanobanana_version = _getenv("MMA_NANOBANANA_VERSION")
        self.nanobanana_resolution = _getenv("MMA_NANOBANANA_RESOLUTION", "2K") or "2K"
        self.nanobanana_aspect_ratio = _getenv("MMA_NANOBANANA_ASPECT_RATIO", "match_input_image") or "match_input_image"
        self.nanobanana_output_format = _getenv("MMA_NANOBANANA_OUTPUT_FORMAT", "jpg") or "jpg"
        self.nanobanana_safety_filter_level = (
            _getenv("MMA_NANOBANANA_SAFETY_FILTER_LEVEL", "block_only_high") or "block_only_high"
        )
        self.fallback_aspect_ratio = _getenv("MMA_FALLBACK_ASPECT_RATIO", "1:1") or "1:1"

        self.kling_version = _getenv("MMA_KLING_VERSION", "kwaivgi/kling-v2.1") or "kwaivgi/kling-v2.1"
        self.kling_mode = _getenv("MMA_KLING_MODE", "standard") or "standard"
        self.kling_negative_prompt = _getenv("MMA_NEGATIVE_PROMPT_KLING", "") or ""
        self.kling_motion_control_version = (
            _getenv("MMA_KLING_MOTION_CONTROL_VERSION", "kwaivgi/kling-v2.6-motion-control")
            or "kwaivgi/kling-v2.6-motion-control"
        )
        self.fabric_version = _getenv("MMA_FABRIC_VERSION", "veed/fabric-1.0") or "veed/fabric-1.0"
        self.fabric_resolution = _getenv("MMA_FABRIC_RESOLUTION", "720p") or "720p"

        self.chatter_interval_ms = _getenv_int("MMA_CHATTER_INTERVAL_MS", 2600)
        self.sse_keepalive_s = _getenv_float("MMA_SSE_KEEPALIVE_S", 25.0)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def nanobanana_enabled(self) -> bool:
        return bool(self.nanobanana_version)

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:5173", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
