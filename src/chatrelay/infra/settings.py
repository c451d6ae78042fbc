"""Pipeline settings loaded from the environment."""

import os
from dataclasses import dataclass

DEFAULT_GRAPH_API_VERSION = "v18.0"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class PipelineSettings:
    """Runtime knobs for the ingestion pipeline.

    Unset integrations are disabled rather than fatal: no N8N_WEBHOOK_URL
    means nothing is forwarded, no META_ACCESS_TOKEN means media stays
    unresolved.
    """

    n8n_webhook_url: str | None = None
    n8n_timeout: float = 8.0
    meta_access_token: str | None = None
    graph_api_version: str = DEFAULT_GRAPH_API_VERSION
    media_timeout: float = 10.0
    media_storage_dir: str = "uploads/media"
    media_public_base_url: str = "/media"
    cache_max_conversations: int = 100
    cache_max_messages: int = 200
    cache_sweep_interval: float = 1800.0
    broadcast_timeout: float = 2.0

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            n8n_webhook_url=os.environ.get("N8N_WEBHOOK_URL") or None,
            n8n_timeout=_env_float("N8N_TIMEOUT_SECONDS", 8.0),
            meta_access_token=os.environ.get("META_ACCESS_TOKEN") or None,
            graph_api_version=os.environ.get("META_GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION),
            media_timeout=_env_float("MEDIA_TIMEOUT_SECONDS", 10.0),
            media_storage_dir=os.environ.get("MEDIA_STORAGE_DIR", "uploads/media"),
            media_public_base_url=os.environ.get("MEDIA_PUBLIC_BASE_URL", "/media"),
            cache_max_conversations=_env_int("CACHE_MAX_CONVERSATIONS", 100),
            cache_max_messages=_env_int("CACHE_MAX_MESSAGES_PER_CONVERSATION", 200),
            cache_sweep_interval=_env_float("CACHE_SWEEP_INTERVAL_SECONDS", 1800.0),
            broadcast_timeout=_env_float("BROADCAST_TIMEOUT_SECONDS", 2.0),
        )
