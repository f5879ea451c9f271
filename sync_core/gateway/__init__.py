# =============================================================================
# sync_core/gateway/__init__.py
# Remote Gateway implementations and provider registry
# =============================================================================
"""
Usage:
    gateway = create_gateway(load_settings())
    records = await gateway.fetch(EntityKind.APPOINTMENT)
"""

from typing import Dict, Optional, Type

from sync_core.config import SyncSettings, load_settings
from sync_core.errors import ConfigurationError
from .base import (
    AuthSession,
    ChannelStatus,
    ProgressCallback,
    RealtimeEvent,
    RealtimeEventType,
    RemoteGateway,
    StoredObject,
    Subscription,
    UploadHandle,
    UploadProgress,
)
from .memory_gateway import InMemoryGateway
from .supabase_gateway import SupabaseGateway

# Registry of available gateways
GATEWAYS: Dict[str, Type[RemoteGateway]] = {
    "memory": InMemoryGateway,
    "supabase": SupabaseGateway,
}


def create_gateway(settings: Optional[SyncSettings] = None) -> RemoteGateway:
    """
    Build the gateway for the configured provider.

    Args:
        settings: Sync settings (loaded from secrets/environment if omitted)

    Returns:
        Configured gateway instance
    """
    settings = settings or load_settings()
    gateway_class = GATEWAYS.get(settings.provider)
    if not gateway_class:
        raise ConfigurationError(
            f"Unknown gateway provider: {settings.provider}",
            config_key="provider",
        )
    return gateway_class(settings)


__all__ = [
    "GATEWAYS",
    "create_gateway",
    "RemoteGateway",
    "InMemoryGateway",
    "SupabaseGateway",
    "AuthSession",
    "ChannelStatus",
    "ProgressCallback",
    "RealtimeEvent",
    "RealtimeEventType",
    "StoredObject",
    "Subscription",
    "UploadHandle",
    "UploadProgress",
]
