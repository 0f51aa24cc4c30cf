"""Shared persistence helpers for get-or-create under concurrent writers."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errata_backend.config import UNIQUE_RACE_RETRY_ATTEMPTS, UNIQUE_RACE_RETRY_DELAY_SECONDS
from errata_backend.db_session import is_unique_constraint_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def create_or_find_by_unique_constraint(
    session: AsyncSession,
    find_existing: Callable[[], Awaitable[Optional[T]]],
    create: Callable[[], Awaitable[T]],
    assert_equivalent: Optional[Callable[[T], None]] = None,
    attempts: int = UNIQUE_RACE_RETRY_ATTEMPTS,
    delay_seconds: float = UNIQUE_RACE_RETRY_DELAY_SECONDS,
) -> T:
    """
    Return the existing row, or create it.

    ``create`` runs inside a SAVEPOINT so a unique-constraint violation only
    discards the failed insert, not the caller's transaction. After a violation
    the winner's row is re-read up to ``attempts`` times, ``delay_seconds``
    apart. ``assert_equivalent`` must raise if a found row's payload differs
    from the one we meant to write.
    """
    existing = await find_existing()
    if existing is not None:
        if assert_equivalent is not None:
            assert_equivalent(existing)
        return existing

    try:
        async with session.begin_nested():
            return await create()
    except IntegrityError as exc:
        if not is_unique_constraint_error(exc):
            raise
        logger.debug("[DB] Unique constraint race, re-reading winner: %s", exc.orig)
        for _ in range(attempts):
            raced = await find_existing()
            if raced is not None:
                if assert_equivalent is not None:
                    assert_equivalent(raced)
                return raced
            await asyncio.sleep(delay_seconds)
        raise
