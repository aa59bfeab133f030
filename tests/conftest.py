"""Shared fixtures: an in-process fake of the spreadsheet web app."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from senja_sync.config import Settings
from senja_sync.connectors.sheet_client import SheetClient
from senja_sync.core.cache import LocalCache, MemoryBackend
from senja_sync.core.engine import SyncEngine

ENDPOINT = "https://script.example.test/macros/s/abc/exec"


class FakeSheet:
    """
    Mimics the backend script: GET returns every sheet, POST overwrites one.

    Set ``pull_gate`` / ``push_gate`` to an asyncio.Event to hold requests
    until the test releases them.
    """

    def __init__(self) -> None:
        self.data: dict[str, Any] = {
            "accounts": [],
            "roster": [],
            "contentitems": [],
            "submissions": [],
            "settings": {},
        }
        self.gets = 0
        self.pushes: list[tuple[str, list[dict[str, Any]]]] = []
        self.fail_pull = False
        self.fail_push = False
        self.pull_gate: asyncio.Event | None = None
        self.push_gate: asyncio.Event | None = None
        self.push_started: asyncio.Event | None = None

    def pushes_for(self, sheet: str) -> list[list[dict[str, Any]]]:
        return [rows for name, rows in self.pushes if name == sheet]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.gets += 1
            if self.pull_gate is not None:
                await self.pull_gate.wait()
            if self.fail_pull:
                return httpx.Response(500, text="Internal error")
            return httpx.Response(200, json=self.data)

        body = json.loads(request.content)
        if self.push_started is not None:
            self.push_started.set()
        if self.push_gate is not None:
            await self.push_gate.wait()
        if self.fail_push:
            return httpx.Response(503, text="Service unavailable")
        self.pushes.append((body["sheet"], body["data"]))
        return httpx.Response(200, json={"status": "success"})


@pytest.fixture
def fake_sheet() -> FakeSheet:
    """Create a fake backend."""
    return FakeSheet()


@pytest.fixture
def make_engine(fake_sheet: FakeSheet) -> Callable[..., SyncEngine]:
    """Factory for engines wired to the fake backend and a memory cache."""

    def factory(cache: LocalCache | None = None, **overrides: Any) -> SyncEngine:
        sync = {"pull_on_start": False, **overrides.pop("sync", {})}
        settings = Settings(
            endpoint_url=ENDPOINT,
            cache={"backend": "memory"},
            sync=sync,
            **overrides,
        )
        client = SheetClient(
            ENDPOINT,
            options=settings.transport,
            transport=httpx.MockTransport(fake_sheet.handler),
        )
        return SyncEngine(settings, cache=cache or LocalCache(MemoryBackend()), client=client)

    return factory
