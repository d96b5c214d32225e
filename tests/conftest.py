"""Shared fixtures: in-memory store, fake provider upstreams, virtual sleep."""
import sys
from pathlib import Path

import pytest

# Ensure repo root and this directory are importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from dashboard.config import Settings
from dashboard.context import build_context
from fakes import COMFY_URL, OLLAMA_URL, FakeUpstream


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float):
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        storage_path=str(tmp_path / "storage"),
        encryption_key="test-passphrase",
        ollama_url=OLLAMA_URL,
        comfyui_url=COMFY_URL,
        poll_interval_s=1.0,
        poll_max_attempts=5,
    )


@pytest.fixture
def ctx(settings, upstream, fake_sleep):
    context = build_context(settings, transport=upstream.transport, sleep=fake_sleep)
    yield context
    context.engine.dispose()


@pytest.fixture
def tracker(ctx):
    return ctx.tracker
