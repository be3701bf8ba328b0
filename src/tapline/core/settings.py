"""
Centralized settings for tapline.

Manifesto:
    Every knob the orchestrator reads (tick period, batch size, timeouts,
    the URL match pattern and the extraction path) is externally supplied
    and validated once at startup. ``TaplineSettings`` reads ``TAPLINE_*``
    environment variables and ``.env`` files; nothing else in the package
    parses the environment.

Fields
──────
database_path              : SQLite file for the capture store
tick_interval_seconds      : orchestrator timer period
batch_size                 : worker contexts started concurrently per schedule
inter_batch_delay_seconds  : pause between batches of one firing
max_global_contexts        : optional cap across all schedules (None = uncapped)
context_timeout_seconds    : hard per-context timeout
observation_seconds        : how long a ready context watches traffic
injection_delays           : injection attempt offsets, one attempt per entry
heartbeat_interval_seconds : page hook heartbeat period
stall_after_seconds        : inactivity window before a context reports stalled
url_pattern                : primary URL match pattern
alternate_patterns         : fallback patterns checked after the primary
extraction_path            : dot-separated path into the JSON response body
max_captured_exchanges     : per-schedule CapturedExchange cap
dedup_window_seconds       : proximity window for correlation and dedup
headless / browser         : Playwright launch options
log_level / log_format     : structlog configuration

Tags:
    settings, configuration, pydantic, environment, tapline

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_URL_PATTERN = "https://shopee.vn/api/v4/pdp/get_pc"

DEFAULT_ALTERNATE_PATTERNS = [
    "/api/v4/pdp/get_pc",
    "api/v4/pdp/get_pc",
    "/api/v4/item/get",
    "api/v4/item/get",
    "/api/v4/product/",
    "api/v4/product/",
]

DEFAULT_EXTRACTION_PATH = "data.item.models"


class TaplineSettings(BaseSettings):
    """tapline configuration.

    All fields can be set via ``TAPLINE_*`` environment variables (e.g.
    ``TAPLINE_BATCH_SIZE=5``) or through a ``.env`` file. List fields take
    JSON (``TAPLINE_INJECTION_DELAYS='[0, 1, 3]'``).
    """

    model_config = SettingsConfigDict(
        env_prefix="TAPLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    database_path: str = Field(default="data/tapline.db")
    max_captured_exchanges: int = Field(default=1000, ge=1)

    # ── Dispatcher ───────────────────────────────────────────────
    tick_interval_seconds: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=3, ge=1)
    inter_batch_delay_seconds: float = Field(default=2.0, ge=0)
    max_global_contexts: int | None = Field(
        default=None,
        ge=1,
        description="Cap on worker contexts alive across all schedules",
    )

    # ── Worker contexts ──────────────────────────────────────────
    context_timeout_seconds: float = Field(default=30.0, gt=0)
    observation_seconds: float = Field(default=20.0, gt=0)
    injection_delays: list[float] = Field(default_factory=lambda: [0.0, 2.0, 5.0])
    heartbeat_interval_seconds: float = Field(default=10.0, gt=0)
    stall_after_seconds: float = Field(default=30.0, gt=0)

    # ── Interception ─────────────────────────────────────────────
    url_pattern: str = Field(default=DEFAULT_URL_PATTERN)
    alternate_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALTERNATE_PATTERNS)
    )
    extraction_path: str = Field(default=DEFAULT_EXTRACTION_PATH)
    dedup_window_seconds: float = Field(default=2.0, ge=0)

    # ── Browser ──────────────────────────────────────────────────
    headless: bool = Field(default=True)
    browser: str = Field(default="chromium")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @model_validator(mode="after")
    def _check_timing(self) -> TaplineSettings:
        if self.observation_seconds >= self.context_timeout_seconds:
            raise ValueError(
                "observation_seconds must be shorter than context_timeout_seconds"
            )
        if not self.injection_delays:
            raise ValueError("injection_delays needs at least one attempt")
        previous = 0.0
        for offset in self.injection_delays:
            if offset < previous:
                raise ValueError("injection_delays must be non-negative and non-decreasing")
            previous = offset
        if self.browser not in ("chromium", "firefox", "webkit"):
            raise ValueError(f"Unknown browser: {self.browser}")
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, TaplineSettings] = {}


def get_settings(*, env_file: str | None = None, _force_reload: bool = False) -> TaplineSettings:
    """Load, validate, and cache a :class:`TaplineSettings` instance.

    Parameters
    ----------
    env_file:
        Explicit ``.env`` file to read instead of the default.
    _force_reload:
        Bypass cache and reload.
    """
    cache_key = env_file or ""
    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    if env_file:
        settings = TaplineSettings(_env_file=env_file)  # type: ignore[call-arg]
    else:
        settings = TaplineSettings()
    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Drop cached settings (tests, config reloads)."""
    _settings_cache.clear()
