"""
Store construction.

This module contains *only* the persistence wiring: it builds the async
Supabase client from settings and selects the Store implementation for the
configured backend.

Environment variables (read via settings.Settings):
- STORAGE_BACKEND: "memory" (default) or "supabase"
- SUPABASE_URL: Your Supabase project URL
- SUPABASE_KEY: Your Supabase API key (use a server-side key only on the backend)
"""

from __future__ import annotations

from supabase import AsyncClient, acreate_client

from repositories.memory_store import InMemoryStore
from repositories.store import Store
from repositories.supabase_store import SupabaseStore
from settings import Settings


async def create_supabase_client(settings: Settings) -> AsyncClient:
    if not settings.supabase_url:
        raise RuntimeError(
            "Missing environment variable: SUPABASE_URL. "
            "Set SUPABASE_URL to your Supabase project URL."
        )

    if not settings.supabase_key:
        raise RuntimeError(
            "Missing environment variable: SUPABASE_KEY. "
            "Set SUPABASE_KEY to your Supabase API key."
        )

    return await acreate_client(settings.supabase_url, settings.supabase_key)


async def create_store(settings: Settings) -> Store:
    """Build the Store for settings.storage_backend."""

    if settings.storage_backend == "supabase":
        return SupabaseStore(await create_supabase_client(settings))
    return InMemoryStore()


__all__ = ["create_store", "create_supabase_client"]
