"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supabase import create_client

from intake_funnel.adapters.funnel_api_client import FunnelApi, HttpxFunnelApiClient
from intake_funnel.adapters.supabase_snapshot_repository import (
    SupabaseSnapshotRepository,
)
from intake_funnel.config import Settings
from intake_funnel.services.funnel import FunnelOptions, FunnelRegistry
from intake_funnel.services.persistence import InMemorySnapshotStore, SnapshotStore


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    funnel_api: FunnelApi
    snapshot_store: SnapshotStore
    registry: FunnelRegistry
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    funnel_client = HttpxFunnelApiClient.create(
        base_url=resolved_settings.api_base_url,
        nonce=resolved_settings.nonce,
        nonce_refresh_url=resolved_settings.nonce_refresh_url,
        timeout=resolved_settings.request_timeout_seconds,
    )
    snapshot_store: SnapshotStore
    if resolved_settings.supabase_url and resolved_settings.supabase_service_key:
        supabase_client = create_client(
            resolved_settings.supabase_url, resolved_settings.supabase_service_key
        )
        snapshot_store = SupabaseSnapshotRepository(supabase_client)
    else:
        snapshot_store = InMemorySnapshotStore()
    registry = FunnelRegistry(
        api=funnel_client,
        store=snapshot_store,
        options=FunnelOptions.from_settings(resolved_settings),
    )

    async def close_resources() -> None:
        registry.close()
        await funnel_client.close()

    return AppContainer(
        settings=resolved_settings,
        funnel_api=funnel_client,
        snapshot_store=snapshot_store,
        registry=registry,
        close_resources=close_resources,
    )
