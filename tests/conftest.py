"""Shared offline fixtures: a throwaway SQLite mirror per test."""
from __future__ import annotations

import asyncio

import pytest

from spend_settlement.store import MirrorStore


@pytest.fixture
def with_store(tmp_path):
    """Run ``fn(store)`` inside one event loop against a fresh database."""

    def _run(fn):
        async def _go():
            store = MirrorStore(f"sqlite+aiosqlite:///{tmp_path}/mirror.db")
            await store.init()
            try:
                return await fn(store)
            finally:
                await store.close()

        return asyncio.run(_go())

    return _run
