from __future__ import annotations

from typing import Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from maintrack.security.allowlist import AllowlistConfig
from maintrack.tickets.attachments import AttachmentManager, LocalBlobStore
from maintrack.tickets.mirror import MirrorRow, MirrorSync
from maintrack.tickets.service import TicketService
from maintrack.tickets.store import TicketStore


class RecordingSink:
    """Mirror sink keeping every full-replace call in memory."""

    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[list[MirrorRow]] = []
        self.fail = fail

    async def replace_all(self, rows: Sequence[MirrorRow]) -> None:
        if self.fail:
            raise ConnectionError("sheet unreachable")
        self.calls.append(list(rows))


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'breakdowns.db'}")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def store(engine: AsyncEngine) -> TicketStore:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    store = TicketStore(factory, engine=engine)
    await store.ensure_schema()
    return store


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "uploads", public_prefix="/api/files")


@pytest.fixture
def attachments(blob_store: LocalBlobStore) -> AttachmentManager:
    return AttachmentManager(blob_store, allowed_extensions=("jpg", "png", "pdf"), max_size=1024)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def service(store: TicketStore, attachments: AttachmentManager, sink: RecordingSink) -> TicketService:
    return TicketService(
        store,
        allowlists=AllowlistConfig.default(),
        attachments=attachments,
        mirror=MirrorSync(store, sink),
        sync_inline=True,
    )


@pytest.fixture
def failing_sink() -> RecordingSink:
    return RecordingSink(fail=True)
