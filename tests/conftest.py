import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wherewhen.main import SocialCore, build_core
from wherewhen.models import Base
from wherewhen.models.user import User

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakePipeline:
    """Buffers commands until ``execute``; after ``watch`` runs them immediately
    until ``multi``, like a redis.asyncio transaction pipeline."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._watched: dict[str, int] = {}
        self._queue: list[tuple[str, tuple, dict]] = []
        self._immediate = False

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self.reset()

    def reset(self) -> None:
        self._watched.clear()
        self._queue.clear()
        self._immediate = False

    async def watch(self, *keys: str) -> None:
        self._redis._check()
        for key in keys:
            self._watched[key] = self._redis._versions.get(key, 0)
        self._immediate = True

    def multi(self) -> None:
        self._immediate = False

    def _command(self, name: str, *args, **kwargs):
        if self._immediate:
            return getattr(self._redis, name)(*args, **kwargs)
        self._queue.append((name, args, kwargs))
        return self

    def get(self, key: str):
        return self._command("get", key)

    def set(self, key: str, value: str, ex: int | None = None):
        return self._command("set", key, value, ex=ex)

    def delete(self, *keys: str):
        return self._command("delete", *keys)

    def incr(self, key: str):
        return self._command("incr", key)

    async def execute(self) -> list:
        self._redis._check()
        try:
            for key, version in self._watched.items():
                if self._redis._versions.get(key, 0) != version:
                    raise WatchError(f"Watched variable changed: {key}")
            return [
                await getattr(self._redis, name)(*args, **kwargs)
                for name, args, kwargs in self._queue
            ]
        finally:
            self.reset()


class FakeRedis:
    """In-memory Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self._versions: dict[str, int] = {}
        self.broken = False

    def _check(self) -> None:
        if self.broken:
            raise RedisConnectionError("redis is down")

    def _touch(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    async def get(self, key: str) -> str | None:
        self._check()
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._check()
        self._store[key] = str(value)
        if ex:
            self._ttls[key] = ex
        self._touch(key)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
            self._touch(key)
        return removed

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self._store.get(key) or 0) + 1
        self._store[key] = str(value)
        self._touch(key)
        return value

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


async def create_user(
    db: AsyncSession, display_name: str, email: str, description: str = ""
) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email,
        display_name=display_name,
        description=description,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def alice(db_session: AsyncSession) -> User:
    return await create_user(db_session, "Alice Walker", "alice@example.com", "Likes hiking")


@pytest.fixture
async def bob(db_session: AsyncSession) -> User:
    return await create_user(db_session, "Bob Stone", "bob@example.com")


@pytest.fixture
async def carol(db_session: AsyncSession) -> User:
    return await create_user(db_session, "Carol Alvarez", "carol@example.com")


@pytest.fixture
async def dave(db_session: AsyncSession) -> User:
    return await create_user(db_session, "Dave Quinn", "dave@example.com")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def core(session_factory) -> SocialCore:
    """Core without the cache layer."""
    return build_core(session_factory)


@pytest.fixture
def cached_core(session_factory, fake_redis: FakeRedis) -> SocialCore:
    return build_core(session_factory, fake_redis)
