from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from gridduel.config import Config
from gridduel.database.models import Base, Player
from gridduel.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info(f"Initializing GridDuel store at {self.database_url}")

        # Rejects unusable Elo tuning or a zero retry budget before anything connects
        Config.validate()

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Match, rating and head-to-head tables ready")

    @asynccontextmanager
    async def get_session(self):
        """Get a session for reads; callers that write must commit or use transaction()"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure. A match transition (state write,
        move log, rating updates, head-to-head row) always runs inside one of
        these so that readers never observe a half-finalized round.

        Usage:
            async with db.transaction() as session:
                match = await session.get(Match, match_id)
                ...
                await rating_ops.finalize_result(session, match, status, winner)
                # Everything commits together here

        Exceptions must be allowed to propagate out of the context for
        rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # Players (identity is issued upstream; rows exist for foreign keys and display names)
    async def create_player(self, display_name: str, identity_tier: str = "guest",
                            player_id: Optional[str] = None) -> Player:
        """Create a new player (identity issuance happens upstream)"""
        async with self.get_session() as session:
            player = Player(
                display_name=display_name.strip(),
                identity_tier=identity_tier,
            )
            if player_id:
                player.id = player_id
            session.add(player)
            await session.commit()
            return player

    async def get_player(self, player_id: str) -> Optional[Player]:
        """Get a player by id"""
        async with self.get_session() as session:
            return await session.get(Player, player_id)

