# =============================================================================
# sync_core/config/settings.py
# Settings for the data layer (Streamlit secrets -> environment -> defaults)
# =============================================================================
"""
Settings loading.

Expected secrets in .streamlit/secrets.toml:

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"

    [sync]
    provider = "supabase"        # or "memory"
    request_timeout = 15
    fetch_max_retries = 3

Environment variables override nothing that secrets define; they are the
fallback for scripts and tests run outside Streamlit.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

from sync_core.errors import ConfigurationError
from sync_core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SyncSettings:
    """Configuration for gateway, coordinator and storage behaviour"""
    provider: str = "supabase"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    request_timeout: float = 15.0       # seconds per backend call
    fetch_max_retries: int = 3          # retries for idempotent reads only
    backoff_initial: float = 0.5        # seconds before the first retry
    backoff_base: float = 2.0           # exponential backoff base
    page_size: int = 1000               # PostgREST row limit per request
    upload_chunk_size: int = 64 * 1024
    task_bucket: str = "task-submissions"
    reel_bucket: str = "reel-images"
    realtime_enabled: bool = True

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return self.backoff_initial * (self.backoff_base ** (attempt - 1))

    def with_overrides(self, **overrides: Any) -> SyncSettings:
        return replace(self, **overrides)

    def require_supabase(self) -> None:
        if not self.supabase_url:
            raise ConfigurationError(
                "Supabase URL not configured",
                config_key="supabase.url",
            )
        if not self.supabase_key:
            raise ConfigurationError(
                "Supabase key not configured",
                config_key="supabase.key",
            )


_FIELD_TYPES = {f.name: f.type for f in fields(SyncSettings)}


def _coerce(name: str, value: Any) -> Any:
    """Coerce a secrets/env value to the declared field type."""
    declared = _FIELD_TYPES[name]
    try:
        if declared == "bool":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if declared == "int":
            return int(value)
        if declared == "float":
            return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid value for {name}: {value!r}",
            config_key=name,
            expected_type=declared,
        )
    return value


def _read_streamlit_secrets() -> Dict[str, Any]:
    """Load [supabase] and [sync] sections from Streamlit secrets, if any."""
    values: Dict[str, Any] = {}
    try:
        import streamlit as st

        if "supabase" in st.secrets:
            values["supabase_url"] = st.secrets["supabase"].get("url")
            values["supabase_key"] = st.secrets["supabase"].get("key")
        if "sync" in st.secrets:
            values.update(dict(st.secrets["sync"]))
    except Exception as e:
        # No secrets.toml outside a Streamlit deployment
        logger.debug(f"Streamlit secrets not available: {e}")
    return values


def _read_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    mapping = {
        "SUPABASE_URL": "supabase_url",
        "SUPABASE_KEY": "supabase_key",
        "SYNC_PROVIDER": "provider",
        "SYNC_REQUEST_TIMEOUT": "request_timeout",
        "SYNC_FETCH_MAX_RETRIES": "fetch_max_retries",
        "SYNC_REALTIME_ENABLED": "realtime_enabled",
    }
    return {
        field_name: environ[env_key]
        for env_key, field_name in mapping.items()
        if environ.get(env_key)
    }


def load_settings(
    secrets: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncSettings:
    """
    Build settings from secrets, then environment, then defaults.

    Args:
        secrets: Pre-flattened secrets (field name -> value); read from
            Streamlit when omitted
        environ: Environment mapping (default: os.environ)

    Returns:
        SyncSettings
    """
    values: Dict[str, Any] = {}
    values.update(_read_environment(os.environ if environ is None else environ))
    values.update(
        {k: v for k, v in (secrets if secrets is not None else _read_streamlit_secrets()).items()
         if v is not None}
    )

    unknown = sorted(set(values) - set(_FIELD_TYPES))
    if unknown:
        logger.warning(f"Ignoring unknown sync settings: {unknown}")

    settings = SyncSettings(
        **{name: _coerce(name, value) for name, value in values.items() if name in _FIELD_TYPES}
    )
    if settings.provider not in ("supabase", "memory"):
        raise ConfigurationError(
            f"Unknown gateway provider: {settings.provider}",
            config_key="provider",
        )
    return settings
