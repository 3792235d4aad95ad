import inspect
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wherewhen.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

_ON_COMMIT_KEY = "wherewhen.on_commit"


def on_commit(db: AsyncSession, callback: Callable, *args) -> None:
    """Run *callback(*args)* once the current transaction of *db* has committed.

    Callbacks may be plain functions or coroutine functions. They are dropped
    if the transaction rolls back.
    """
    db.info.setdefault(_ON_COMMIT_KEY, []).append((callback, args))


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session, run the block in one transaction, then fire on-commit hooks."""
    async with session_factory() as db:
        async with db.begin():
            yield db
        hooks = db.info.pop(_ON_COMMIT_KEY, [])

    for callback, args in hooks:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

