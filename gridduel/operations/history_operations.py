"""
History Operations Module

Per-player history of scored rounds, built from the rating audit trail, and
soft archiving of matches a player no longer wants listed.
"""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from gridduel.constants import PaginationConstants
from gridduel.data_models.ratings import HistoryEntry
from gridduel.database.models import Match, Player, RatingEvent, utc_now
from gridduel.operations.rating_operations import clamp_limit
from gridduel.services.base import BaseService
from gridduel.utils.exceptions import MatchNotFoundError, MatchPermissionError
from gridduel.utils.logger import setup_logger

logger = setup_logger(__name__)


class HistoryOperations(BaseService):
    """Match history reads and archiving for a single player."""

    def __init__(self, database):
        super().__init__(lambda: database.async_session())
        self.db = database
        self.logger = logger

    async def get_player_history(self, player_id: str,
                                 limit: int = PaginationConstants.DEFAULT_HISTORY_LIMIT) -> List[HistoryEntry]:
        """
        Get a player's scored rounds, newest first.

        Each entry reflects the round as it was scored (result, status and
        Elo delta come from the rating event), not the match's current round.
        """
        limit = clamp_limit(limit, PaginationConstants.DEFAULT_HISTORY_LIMIT)
        opponent = aliased(Player)

        async with self.db.get_session() as session:
            result = await session.execute(
                select(RatingEvent, Match, opponent.display_name)
                .join(Match, Match.id == RatingEvent.match_id)
                .outerjoin(opponent, opponent.id == RatingEvent.opponent_id)
                .where(RatingEvent.player_id == player_id)
                .order_by(RatingEvent.created_at.desc(), RatingEvent.id.desc())
                .limit(limit)
            )
            rows = result.all()

        return [
            HistoryEntry(
                match_id=match.id,
                room_code=match.room_code,
                board_size=match.size,
                win_length=match.win_length,
                status=event.outcome_status.value,
                result=event.match_result.value,
                opponent_name=opponent_name or "Unknown",
                elo_delta=event.delta,
                played_at=event.created_at,
                round_number=event.round_number,
                archived=match.archived_at is not None,
            )
            for event, match, opponent_name in rows
        ]

    async def archive_match(self, match_id: int, player_id: str) -> bool:
        """
        Hide a match from its players' listings.

        Raises:
            MatchNotFoundError: If the match does not exist
            MatchPermissionError: If the player is not seated in the match
        """
        async def _archive(session: AsyncSession) -> bool:
            match = await session.get(Match, match_id)
            if match is None:
                raise MatchNotFoundError(match_id)

            if match.seats.symbol_for(player_id) is None:
                raise MatchPermissionError(match_id, player_id)

            match.archived_at = utc_now()
            self.logger.info(f"Match {match_id} archived by {player_id}")
            return True

        return await self.run_in_transaction("archive_match", _archive)
