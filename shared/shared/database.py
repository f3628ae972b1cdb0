import asyncio
import logging

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

# postgres serialization_failure / deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


class TransactionConflict(Exception):
    pass


def get_engine(database_url: str, **kwargs):
    return create_async_engine(database_url, echo=False, future=True, **kwargs)

Base = declarative_base()

def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )


def is_retryable(exc: DBAPIError) -> bool:
    if exc.connection_invalidated:
        return True
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    # sqlite reports writer contention as "database is locked"
    return "database is locked" in str(orig or exc).lower()


async def run_in_transaction(session_factory, fn, *, max_attempts: int = 5, backoff_seconds: float = 0.05):
    """
    Run `fn(session)` inside one transaction and commit it.

    Write conflicts roll the whole unit back and re-run it from scratch, up to
    `max_attempts` times; after that TransactionConflict is raised. Any other
    exception raised by `fn` rolls back and propagates unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except DBAPIError as e:
            if not is_retryable(e):
                raise
            if attempt >= max_attempts:
                raise TransactionConflict(f"transaction gave up after {attempt} attempts: {e}") from e
            logger.warning("transaction conflict, retrying (attempt %s/%s)", attempt, max_attempts)
            await asyncio.sleep(backoff_seconds * attempt)
