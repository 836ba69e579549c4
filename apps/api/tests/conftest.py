from pathlib import Path
from typing import Dict, List
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.storage import ObjectNotFoundError, StoredObject


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeObjectStore:
    """In-memory stand-in for S3ObjectStore."""

    def __init__(self, bucket: str = "test-bucket"):
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.reported_sizes: Dict[str, int] = {}
        self.uploads: List[dict] = []

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.us-east-1.amazonaws.com/{key}"

    def object_size(self, key: str) -> int:
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return self.reported_sizes.get(key, len(self.objects[key]))

    def download(self, key: str, destination: Path) -> Path:
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.objects[key])
        return destination

    def upload(self, body: bytes, key: str, content_type: str, cache_control=None) -> StoredObject:
        self.objects[key] = body
        self.uploads.append({"key": key, "content_type": content_type, "cache_control": cache_control})
        return StoredObject(key=key, public_url=self.public_url(key))

    def read_text(self, key: str) -> str:
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return self.objects[key].decode("utf-8")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Temporary SQLite database wired into the transcription record helpers."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'transcription.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    with patch("services.transcription_records.async_session_maker", maker):
        yield maker

    await engine.dispose()
