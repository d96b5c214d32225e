"""
Process-wide collaborators, built once at startup and handed to the app.

Tests call ``build_context`` with an in-memory database URL, an
``httpx.MockTransport`` and a fake sleep instead of patching globals.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from backends.gateway import ProviderGateway, build_backends
from dashboard.config import Settings
from dashboard.conversations import ConversationStore
from dashboard.credentials import CredentialStore
from dashboard.db import create_db_engine, init_db, make_session_factory
from dashboard.events import EventHub
from dashboard.jobs import JobTracker
from dashboard.profiles import ProfileStore
from dashboard.results import ResultStore
from dashboard.storage import MediaStorage
from dashboard.vault import CredentialVault


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    sessions: sessionmaker
    vault: CredentialVault
    credentials: CredentialStore
    profiles: ProfileStore
    gateway: ProviderGateway
    events: EventHub
    storage: MediaStorage
    results: ResultStore
    conversations: ConversationStore
    tracker: JobTracker

    async def close(self) -> None:
        await self.tracker.shutdown()
        await self.events.close_all()
        self.engine.dispose()


def build_context(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    **overrides,
) -> AppContext:
    if overrides:
        settings = replace(settings, **overrides)

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    sessions = make_session_factory(engine)

    vault = CredentialVault(settings.encryption_key)
    credentials = CredentialStore(sessions, vault)
    profiles = ProfileStore(sessions, vault)
    gateway = ProviderGateway(build_backends(settings, transport=transport), credentials, profiles)
    events = EventHub()
    storage = MediaStorage(settings.storage_path)
    conversations = ConversationStore(sessions)
    tracker = JobTracker(
        sessions,
        gateway,
        events,
        storage,
        conversations,
        poll_interval_s=settings.poll_interval_s,
        poll_max_attempts=settings.poll_max_attempts,
        poll_in_background=settings.poll_in_background,
        sleep=sleep,
    )
    return AppContext(
        settings=settings,
        engine=engine,
        sessions=sessions,
        vault=vault,
        credentials=credentials,
        profiles=profiles,
        gateway=gateway,
        events=events,
        storage=storage,
        results=ResultStore(sessions, storage),
        conversations=conversations,
        tracker=tracker,
    )
