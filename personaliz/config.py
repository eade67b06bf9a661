"""
Runtime configuration for the Personaliz service.

Everything is read from the environment (a local .env is loaded first) and
frozen into small dataclasses that get passed to the provider clients and the
pipeline services. Nothing below reaches for os.environ after startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    return int(raw) if raw.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    return float(raw) if raw.strip() else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ── Config structs ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one external provider."""
    base_url: str
    api_key: str = ""
    timeout: float = 30.0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class StagePolicy:
    """Fixed-interval polling budget for one generation stage."""
    name: str
    poll_interval: float
    max_attempts: int

    @property
    def budget_seconds(self) -> float:
        return self.poll_interval * self.max_attempts


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    log_level: str = "INFO"
    port: int = 3001
    frontend_url: str = "http://localhost:3000"
    backend_url: str = "http://localhost:3001"
    use_mock_providers: bool = False

    synclabs: ProviderConfig = ProviderConfig(base_url="https://api.synclabs.so/v1", timeout=60.0)
    synclabs_model: str = "sync-1.6.0"
    template_video_url: str = "https://example.com/base-video.mp4"
    synthesis_policy: StagePolicy = StagePolicy("synthesis", poll_interval=10.0, max_attempts=30)
    combine_policy: StagePolicy = StagePolicy("combine", poll_interval=10.0, max_attempts=60)
    # "poll" asks the provider for stage-B status; "callback" waits for the webhook
    generation_resolution: str = "poll"

    whatsapp: ProviderConfig = ProviderConfig(base_url="https://graph.facebook.com/v18.0", timeout=30.0)
    whatsapp_phone_number_id: str = ""
    whatsapp_verify_token: str = "personaliz_verify_token"

    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None

    shutdown_grace_seconds: float = 30.0

    @property
    def mock_generation(self) -> bool:
        return self.use_mock_providers or not self.synclabs.configured

    @property
    def mock_delivery(self) -> bool:
        return self.use_mock_providers or not self.whatsapp.configured

    @property
    def synclabs_webhook_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}/api/synclabs/webhook"

    @property
    def use_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    resolution = os.environ.get("GENERATION_RESOLUTION", "poll").strip().lower()
    if resolution not in ("poll", "callback"):
        raise ValueError(f"GENERATION_RESOLUTION must be 'poll' or 'callback', got {resolution!r}")

    return Settings(
        environment=os.environ.get("ENVIRONMENT", "development"),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        port=_env_int("PORT", 3001),
        frontend_url=os.environ.get("FRONTEND_URL", "http://localhost:3000"),
        backend_url=os.environ.get("BACKEND_URL", "http://localhost:3001"),
        use_mock_providers=_env_bool("USE_MOCK_PROVIDERS"),
        synclabs=ProviderConfig(
            base_url=os.environ.get("SYNCLABS_BASE_URL", "https://api.synclabs.so/v1"),
            api_key=os.environ.get("SYNCLABS_API_KEY", ""),
            timeout=_env_float("SYNCLABS_TIMEOUT", 60.0),
        ),
        synclabs_model=os.environ.get("SYNCLABS_MODEL", "sync-1.6.0"),
        template_video_url=os.environ.get(
            "SYNCLABS_TEMPLATE_VIDEO_URL", "https://example.com/base-video.mp4"
        ),
        synthesis_policy=StagePolicy(
            "synthesis",
            poll_interval=_env_float("SYNTHESIS_POLL_INTERVAL", 10.0),
            max_attempts=_env_int("SYNTHESIS_MAX_ATTEMPTS", 30),
        ),
        combine_policy=StagePolicy(
            "combine",
            poll_interval=_env_float("COMBINE_POLL_INTERVAL", 10.0),
            max_attempts=_env_int("COMBINE_MAX_ATTEMPTS", 60),
        ),
        generation_resolution=resolution,
        whatsapp=ProviderConfig(
            base_url=os.environ.get("WHATSAPP_BASE_URL", "https://graph.facebook.com/v18.0"),
            api_key=os.environ.get("WHATSAPP_API_KEY", ""),
            timeout=_env_float("WHATSAPP_TIMEOUT", 30.0),
        ),
        whatsapp_phone_number_id=os.environ.get("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_verify_token=os.environ.get("WHATSAPP_VERIFY_TOKEN", "personaliz_verify_token"),
        supabase_url=os.environ.get("SUPABASE_URL") or None,
        supabase_service_role_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or None,
        shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE_SECONDS", 30.0),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
