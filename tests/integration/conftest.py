from __future__ import annotations

import os

import httpx
import pytest_asyncio

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORAGE_BACKEND", "memory")

import heartbeat_info.main as main_module  # noqa: E402
from heartbeat_info.main import app  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def clean_state() -> None:
    await main_module.kv_store.reset()
    yield
    await main_module.controllers.aclose()


@pytest_asyncio.fixture
async def client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
