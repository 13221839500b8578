"""
Runtime configuration for the flowpilot worker.

Values come from the environment (a local .env is loaded on import).
Timing knobs are plain seconds so tests can build a zero-delay config:

    RuntimeConfig(retry_base_delay=0, settle_delay=0, ...)
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


class RuntimeConfig(BaseModel):
    # ── Remote agent ─────────────────────────────────────────────────────
    agent_url: str = Field(default_factory=lambda: _env("FLOWPILOT_AGENT_URL", "http://localhost:8765"))
    agent_timeout: float = Field(default_factory=lambda: _env_float("FLOWPILOT_AGENT_TIMEOUT", 360.0))
    reconnect_delay: float = 2.0
    dashboard_url: str = Field(
        default_factory=lambda: _env("FLOWPILOT_DASHBOARD_URL", "https://labs.google/fx/tools/flow")
    )

    # ── Persistence ──────────────────────────────────────────────────────
    redis_url: Optional[str] = Field(default_factory=lambda: os.getenv("REDIS_URL"))
    supabase_url: Optional[str] = Field(default_factory=lambda: os.getenv("SUPABASE_URL"))
    supabase_service_role_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    )

    # ── Control surface ──────────────────────────────────────────────────
    worker_secret: str = Field(default_factory=lambda: _env("WORKER_SHARED_SECRET"))
    environment: str = Field(default_factory=lambda: _env("ENVIRONMENT", "development"))
    stop_grace_period: float = 10.0  # seconds an aborted run gets before it is cancelled

    # ── Downloads ────────────────────────────────────────────────────────
    download_dir: str = Field(default_factory=lambda: _env("FLOWPILOT_DOWNLOAD_DIR", "downloads"))

    # ── Prompt rewriter ──────────────────────────────────────────────────
    rewrite_provider: str = Field(default_factory=lambda: _env("FLOWPILOT_REWRITE_PROVIDER", "deepseek"))
    rewrite_api_key: str = Field(default_factory=lambda: _env("FLOWPILOT_REWRITE_API_KEY"))
    rewrite_model: str = Field(default_factory=lambda: _env("FLOWPILOT_REWRITE_MODEL"))

    # ── Notifications ────────────────────────────────────────────────────
    telegram_bot_token: str = Field(default_factory=lambda: _env("TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str = Field(default_factory=lambda: _env("TELEGRAM_CHAT_ID"))
    discord_webhook_url: str = Field(default_factory=lambda: _env("DISCORD_WEBHOOK_URL"))
    webhook_url: str = Field(default_factory=lambda: _env("FLOWPILOT_WEBHOOK_URL"))
    webhook_headers: dict[str, str] = Field(default_factory=dict)
    notify_timeout: float = 10.0

    # ── Retry / backoff ──────────────────────────────────────────────────
    retry_base_delay: float = 3.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 30.0

    # ── Settings gate and workspace ──────────────────────────────────────
    settings_attempts: int = 3
    settings_retry_delay: float = 2.0
    workspace_load_delay: float = 5.0
    editor_check_attempts: int = 10
    editor_check_interval: float = 3.0

    # ── Pacing between remote actions ────────────────────────────────────
    settle_delay: float = 1.0
    submit_settle_delay: float = 3.0
    pause_poll_interval: float = 1.0
    policy_retry_delay: float = 5.0

    # ── Video throttle ───────────────────────────────────────────────────
    max_concurrent_videos: int = 5
    video_slot_poll_interval: float = 15.0
    video_slot_max_wait: float = 600.0

    # ── Text-to-video completion wait ────────────────────────────────────
    t2v_poll_interval: float = 15.0
    t2v_max_wait: float = 900.0
    t2v_empty_grace: float = 30.0

    # ── Download phase ───────────────────────────────────────────────────
    download_poll_interval: float = 15.0
    download_max_wait: float = 600.0

    # ── Batch queue ──────────────────────────────────────────────────────
    batch_cooldown: float = 60.0


config = RuntimeConfig()
