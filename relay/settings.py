from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

RELAY_DIR = Path(__file__).resolve().parent
CONFIG_PATH = RELAY_DIR / "config" / "relay.yaml"

log = logging.getLogger("render-relay.settings")

# Each provider environment maps to a fixed socket + REST endpoint pair
PROVIDER_HOSTS: Dict[str, Dict[str, str]] = {
    "local": {"socket": "wss://socket-local.sogni.ai", "api": "https://api-local.sogni.ai"},
    "staging": {"socket": "wss://socket-staging.sogni.ai", "api": "https://api-staging.sogni.ai"},
    "production": {"socket": "wss://socket.sogni.ai", "api": "https://api.sogni.ai"},
}
DEFAULT_PROVIDER_ENV = "production"

DEFAULT_COMPLETION_DELAY_MS = 2000
DEFAULT_CLEANUP_DELAY_MS = 600000
DEFAULT_KEEPALIVE_S = 15.0
DEFAULT_SUBSCRIBER_QUEUE = 256
DEFAULT_ORIGINS = "http://localhost:5173"

NEGATIVE_PROMPT = (
    "blurry, low quality, watermark, text, signature, bad anatomy, distorted, ugly, "
    "realistic, photorealistic, 3d render"
)


@dataclass
class RenderSettings:
    """Size/style configuration sent with every project."""
    model_id: str = "flux1-schnell-fp8"
    steps: int = 6
    guidance: float = 1.2
    scheduler: str = "Euler"
    time_step_spacing: str = "Simple"
    size_preset: str = "custom"
    width: int = 768
    height: int = 768
    token_type: str = "spark"
    negative_prompt: str = NEGATIVE_PROMPT
    number_of_images: int = 16


@dataclass
class Settings:
    provider_env: str = DEFAULT_PROVIDER_ENV
    app_id: str = ""
    username: Optional[str] = None
    password: Optional[str] = None
    allowed_origins: List[str] = field(default_factory=lambda: [DEFAULT_ORIGINS])
    port: int = 3001
    completion_delay_ms: int = DEFAULT_COMPLETION_DELAY_MS
    cleanup_delay_ms: int = DEFAULT_CLEANUP_DELAY_MS
    keepalive_s: float = DEFAULT_KEEPALIVE_S
    subscriber_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE
    render: RenderSettings = field(default_factory=RenderSettings)

    @property
    def endpoints(self) -> Dict[str, str]:
        return PROVIDER_HOSTS.get(self.provider_env, PROVIDER_HOSTS[DEFAULT_PROVIDER_ENV])

    @property
    def testnet(self) -> bool:
        return self.provider_env != "production"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def completion_delay_s(self) -> float:
        return self.completion_delay_ms / 1000.0

    @property
    def cleanup_delay_s(self) -> float:
        return self.cleanup_delay_ms / 1000.0


def parse_origins(raw: str) -> List[str]:
    """Split a comma separated origin list, dropping blanks."""
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the YAML config file. A missing file yields an empty config."""
    config_path = path or CONFIG_PATH
    if not config_path.exists():
        log.info("No config file at %s; using defaults and environment", config_path)
        return {}
    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")
    return config


def _int_option(env_name: str, configured: Any, default: int) -> int:
    raw = os.getenv(env_name)
    if raw is not None and raw.strip():
        try:
            return int(raw)
        except ValueError as exc:
            raise ValueError(f"{env_name} must be an integer, got {raw!r}") from exc
    return int(configured) if configured is not None else default


def _float_option(env_name: str, configured: Any, default: float) -> float:
    raw = os.getenv(env_name)
    if raw is not None and raw.strip():
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"{env_name} must be a number, got {raw!r}") from exc
    return float(configured) if configured is not None else default


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Build Settings from the YAML file, then apply environment overrides.

    Environment wins over the file so deployments can keep one file and
    vary credentials and endpoints per host.
    """
    cfg = load_config(path)
    provider_cfg = cfg.get("provider") or {}
    server_cfg = cfg.get("server") or {}
    relay_cfg = cfg.get("relay") or {}
    render_cfg = cfg.get("render") or {}

    provider_env = (os.getenv("SOGNI_ENV") or provider_cfg.get("env") or DEFAULT_PROVIDER_ENV).strip()
    if provider_env not in PROVIDER_HOSTS:
        log.warning("Unknown provider environment %r; falling back to %s", provider_env, DEFAULT_PROVIDER_ENV)

    origins_raw = os.getenv("CLIENT_ORIGIN")
    if origins_raw is not None:
        origins = parse_origins(origins_raw)
    else:
        configured = server_cfg.get("allowed_origins", DEFAULT_ORIGINS)
        origins = parse_origins(configured) if isinstance(configured, str) else [str(o) for o in configured]

    render_fields = set(RenderSettings.__dataclass_fields__)
    unknown_render = set(render_cfg) - render_fields
    if unknown_render:
        raise ValueError(f"Unknown render options in config: {sorted(unknown_render)}")

    return Settings(
        provider_env=provider_env,
        app_id=os.getenv("SOGNI_APP_ID") or provider_cfg.get("app_id") or f"render-relay-{int(time.time() * 1000)}",
        username=os.getenv("SOGNI_USERNAME") or provider_cfg.get("username"),
        password=os.getenv("SOGNI_PASSWORD") or provider_cfg.get("password"),
        allowed_origins=origins,
        port=_int_option("PORT", server_cfg.get("port"), 3001),
        completion_delay_ms=_int_option(
            "RELAY_COMPLETION_DELAY_MS", relay_cfg.get("completion_delay_ms"), DEFAULT_COMPLETION_DELAY_MS
        ),
        cleanup_delay_ms=_int_option(
            "RELAY_CLEANUP_DELAY_MS", relay_cfg.get("cleanup_delay_ms"), DEFAULT_CLEANUP_DELAY_MS
        ),
        keepalive_s=_float_option("RELAY_KEEPALIVE_S", relay_cfg.get("keepalive_s"), DEFAULT_KEEPALIVE_S),
        subscriber_queue_size=_int_option(
            "RELAY_SUBSCRIBER_QUEUE", relay_cfg.get("subscriber_queue_size"), DEFAULT_SUBSCRIBER_QUEUE
        ),
        render=RenderSettings(**render_cfg),
    )
