"""
Base service class for GridDuel operations.

Provides the transactional session scope and the optimistic-conflict retry
loop shared by every match transition.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from gridduel.config import Config
from gridduel.utils.exceptions import MatchConcurrencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A lost compare-and-swap on matches.version, or a racing insert on a unique key
CONFLICT_ERRORS: Tuple[Type[Exception], ...] = (StaleDataError, IntegrityError)

class BaseService:
    """Base class for all services with async database session management."""

    def __init__(self, session_factory):
        """
        Initialize base service with session factory.

        Args:
            session_factory: Async session factory from Database class
        """
        self.session_factory = session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for async database operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def run_in_transaction(self, operation: str,
                                 func: Callable[[AsyncSession], Awaitable[T]],
                                 max_retries: int = None) -> T:
        """
        Run `func(session)` in its own transaction, re-running it from scratch
        when the commit loses an optimistic race.

        `func` must do its own reads: each attempt gets a fresh session, so a
        retry observes whatever the winning writer committed.

        Raises:
            MatchConcurrencyError: If every attempt hit a conflict
        """
        max_retries = max_retries or Config.TRANSITION_MAX_RETRIES
        for attempt in range(max_retries):
            try:
                async with self.get_session() as session:
                    return await func(session)
            except CONFLICT_ERRORS as e:
                if attempt == max_retries - 1:
                    raise MatchConcurrencyError(operation, max_retries) from e
                logger.warning(f"Retry attempt {attempt + 1} for {operation}: {e.__class__.__name__}")
                await asyncio.sleep(0.01 * (2 ** attempt))  # Exponential backoff
