"""
Configuration Management with Pydantic v2 Settings.

Environment variables (and an optional .env file) are loaded and validated
at startup, so a bad timeout or URL fails immediately instead of in the
middle of a queue run.

The per-run user configuration (pacing delays, auto-generation, ...) is
not here: it is persisted in storage as QueueConfig.
"""

from typing import Optional
from pathlib import Path
from urllib.parse import urlparse
import warnings

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Timing fields are in seconds unless the name says otherwise.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ===== Target page =====
    target_url: str = Field(
        default="https://sora.chatgpt.com/",
        alias="TARGET_URL",
        description="Page of the creation tool that receives prompts"
    )

    telemetry_url_pattern: str = Field(
        default="https://browser-intake-datadoghq.com/api/v2/rum",
        alias="TELEMETRY_URL_PATTERN",
        description="URL prefix of the telemetry requests used as a generation heartbeat"
    )

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, v: str) -> str:
        """Only plain http(s) pages can host the agent."""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"TARGET_URL must be an http(s) URL. Got: {v}")
        return v

    # ===== Browser Configuration =====
    user_data_dir: Path = Field(
        default=Path("./browser_data"),
        alias="USER_DATA_DIR",
        description="Directory for browser session persistence (keeps the login)"
    )

    headless: bool = Field(
        default=False,
        alias="HEADLESS",
        description="Run browser in headless mode"
    )

    slow_mo: int = Field(
        default=0,
        ge=0,
        le=1000,
        alias="SLOW_MO",
        description="Milliseconds delay between Playwright operations"
    )

    page_load_timeout: int = Field(
        default=60000,
        ge=5000,
        alias="PAGE_LOAD_TIMEOUT",
        description="Page load timeout in milliseconds"
    )

    action_timeout: int = Field(
        default=20000,
        ge=1000,
        alias="ACTION_TIMEOUT",
        description="Individual Playwright action timeout in milliseconds"
    )

    enable_stealth: bool = Field(
        default=True,
        alias="ENABLE_STEALTH",
        description="Enable playwright-stealth mode"
    )

    # ===== Completion detection =====
    silence_threshold: float = Field(
        default=30.0,
        gt=0,
        alias="SILENCE_THRESHOLD",
        description="Telemetry silence that counts as 'generation finished'"
    )

    monitor_check_interval: float = Field(
        default=5.0,
        gt=0,
        alias="MONITOR_CHECK_INTERVAL",
        description="How often the network monitor checks for silence"
    )

    network_completion_timeout: float = Field(
        default=600.0,
        gt=0,
        alias="NETWORK_COMPLETION_TIMEOUT",
        description="Hard cap on waiting for the network-silence signal"
    )

    dom_completion_timeout: float = Field(
        default=300.0,
        gt=0,
        alias="DOM_COMPLETION_TIMEOUT",
        description="Hard cap on the DOM-polling completion fallback"
    )

    watchdog_grace: float = Field(
        default=60.0,
        ge=0,
        alias="WATCHDOG_GRACE",
        description="Extra time on top of the submission timeouts before an item counts as lost"
    )

    completion_settle_delay: float = Field(
        default=2.0,
        ge=0,
        alias="COMPLETION_SETTLE_DELAY",
        description="Extra wait after the loader disappears in DOM fallback"
    )

    dom_poll_interval: float = Field(
        default=1.0,
        gt=0,
        alias="DOM_POLL_INTERVAL",
        description="Polling interval for DOM waits"
    )

    race_dom_fallback: bool = Field(
        default=False,
        alias="RACE_DOM_FALLBACK",
        description="Race DOM polling against the network signal instead of using it only as fallback"
    )

    # ===== Submission protocol =====
    field_discovery_timeout: float = Field(
        default=10.0,
        gt=0,
        alias="FIELD_DISCOVERY_TIMEOUT",
        description="How long to look for the prompt field"
    )

    generation_start_timeout: float = Field(
        default=10.0,
        gt=0,
        alias="GENERATION_START_TIMEOUT",
        description="How long to wait for a loading indicator after submitting"
    )

    pre_submit_delay: float = Field(
        default=0.5,
        ge=0,
        alias="PRE_SUBMIT_DELAY",
        description="Pause between typing and submitting"
    )

    submit_retries: int = Field(
        default=5,
        ge=0,
        le=50,
        alias="SUBMIT_RETRIES",
        description="Retries while the submit control is missing or disabled"
    )

    submit_retry_interval: float = Field(
        default=0.5,
        ge=0,
        alias="SUBMIT_RETRY_INTERVAL",
        description="Delay between submit control retries"
    )

    # ===== Agent supervision and messaging =====
    ping_timeout: float = Field(
        default=3.0,
        gt=0,
        alias="PING_TIMEOUT",
        description="Cumulative liveness probing window"
    )

    ping_interval: float = Field(
        default=0.2,
        gt=0,
        alias="PING_INTERVAL",
        description="Delay between liveness probes"
    )

    reinject_settle_delay: float = Field(
        default=1.0,
        ge=0,
        alias="REINJECT_SETTLE_DELAY",
        description="Wait after re-injecting the agent before pinging again"
    )

    send_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        alias="SEND_MAX_ATTEMPTS",
        description="Delivery attempts for agent messages"
    )

    send_base_delay: float = Field(
        default=0.5,
        ge=0,
        alias="SEND_BASE_DELAY",
        description="Backoff unit between delivery attempts (attempt * base)"
    )

    message_timeout: float = Field(
        default=30.0,
        gt=0,
        alias="MESSAGE_TIMEOUT",
        description="Timeout of a single request over the message bus"
    )

    # ===== Storage =====
    storage_path: Path = Field(
        default=Path("./data/autoqueue.json"),
        alias="STORAGE_PATH",
        description="JSON file holding config, items, history and queue state"
    )

    history_limit: int = Field(
        default=1000,
        ge=1,
        alias="HISTORY_LIMIT",
        description="Maximum number of history entries kept"
    )

    selectors_file: Optional[Path] = Field(
        default=None,
        alias="SELECTORS_FILE",
        description="YAML file overriding the DOM matcher lists"
    )

    prompts_file: Optional[Path] = Field(
        default=None,
        alias="PROMPTS_FILE",
        description="Newline-separated prompts imported at launch"
    )

    # ===== Prompt generation API =====
    api_key: Optional[str] = Field(
        default=None,
        alias="OPENAI_API_KEY",
        description="API key for prompt generation (optional)"
    )

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty as unset, reject obvious placeholders."""
        if v is None or not v.strip():
            return None

        placeholders = [
            "your_api_key_here",
            "your_openai_api_key_here",
            "sk-your-key-here",
            "test",
            "none",
        ]

        if v.lower() in placeholders or len(v) < 10:
            raise ValueError(
                "Invalid API key detected.\n"
                "Set OPENAI_API_KEY in the .env file or leave it empty to disable prompt generation."
            )

        return v.strip()

    api_base_url: str = Field(
        default="https://api.openai.com/v1",
        alias="API_BASE_URL",
        description="OpenAI-compatible API base URL"
    )

    @field_validator("api_base_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Enforce HTTPS except for local development servers."""
        if not v.startswith("https://") and "localhost" not in v and "127.0.0.1" not in v:
            raise ValueError(f"API_BASE_URL must use HTTPS. Got: {v}")

        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid API_BASE_URL format: {v}")

        return v

    model_name: str = Field(
        default="gpt-4o-mini",
        alias="MODEL_NAME",
        description="Model used for prompt generation"
    )

    proxy_url: Optional[str] = Field(
        default=None,
        alias="PROXY_URL",
        description="HTTP proxy URL for API requests"
    )

    http_timeout: float = Field(
        default=120.0,
        alias="HTTP_TIMEOUT",
        description="HTTP request timeout in seconds"
    )

    @field_validator("http_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout is reasonable."""
        if v > 300:
            warnings.warn(
                f"HTTP_TIMEOUT is very high: {v}s\n"
                "Recommended for cloud APIs: 60-120 seconds"
            )

        if v < 10:
            raise ValueError("HTTP_TIMEOUT too low (min 10s)")

        return v

    max_tokens: int = Field(
        default=2000,
        ge=100,
        alias="MAX_TOKENS",
        description="Maximum tokens in a generation response"
    )

    temperature: float = Field(
        default=0.9,
        ge=0.0,
        le=2.0,
        alias="TEMPERATURE",
        description="Sampling temperature for prompt generation"
    )

    # ===== Debugging =====
    debug_mode: bool = Field(
        default=False,
        alias="DEBUG_MODE",
        description="Enable debug logging and screenshots on error"
    )

    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Root log level"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    log_file: Optional[Path] = Field(
        default=None,
        alias="LOG_FILE",
        description="Also write logs to this file"
    )

    screenshot_dir: Path = Field(
        default=Path("./screenshots"),
        alias="SCREENSHOT_DIR",
        description="Directory for error screenshots"
    )

    @model_validator(mode='after')
    def create_directories(self) -> 'Settings':
        """
        Post-validation directory setup.

        Creates required directories if they don't exist.
        """
        self.user_data_dir.mkdir(parents=True, exist_ok=True)
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        return self

    @property
    def completion_watchdog(self) -> float:
        """Longest time an item may stay in flight before it counts as lost."""
        return (
            self.field_discovery_timeout
            + self.generation_start_timeout
            + self.network_completion_timeout
            + self.watchdog_grace
        )


def load_settings() -> Settings:
    """
    Load and validate settings from environment.

    Returns:
        Validated Settings instance

    Raises:
        ValidationError: If settings are invalid
    """
    return Settings()
