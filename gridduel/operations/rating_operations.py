"""
Rating Operations Module

The outcome finalizer and the rating reads built on top of it.

finalize_result() turns one terminal round into Elo movement for both seats,
two RatingEvent audit rows and a head-to-head counter update. It never opens
its own transaction: it runs inside the caller's, next to the match write that
made the round terminal, so either everything lands or nothing does.

Idempotency:
- A round is scored at most once. The existence check on
  (match, round) rating events makes a repeated call a silent no-op.
- Two finalizers that both pass the check concurrently collide on the
  (match, round, player) unique key; the loser's transaction rolls back
  and its retry sees the winner's events.
- Rating and head-to-head rows are read FOR UPDATE and carry a version
  column. Two rounds of different matches that share a player cannot both
  apply a delta to the same read; the later commit raises StaleDataError
  and its retry scores against the updated row.
"""

from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gridduel.constants import PaginationConstants
from gridduel.data_models.ratings import (
    HeadToHeadRecord, LeaderboardEntry, RoundRatingChange, RoundRatingSummary
)
from gridduel.database.models import (
    HeadToHeadStat, Match, MatchResult, Player, Rating, RatingEvent, utc_now
)
from gridduel.engine.types import MatchStatus, Symbol
from gridduel.utils.elo import EloCalculator, RatingSettings
from gridduel.utils.logger import setup_logger

logger = setup_logger(__name__)


def canonical_pair(player_a_id: str, player_b_id: str) -> Tuple[str, str]:
    """Order a pair so that (A, B) and (B, A) map to the same row"""
    low, high = sorted((player_a_id, player_b_id))
    return low, high


def clamp_limit(limit: Optional[int], default: int) -> int:
    return min(max(limit or default, 1), PaginationConstants.MAX_PAGE_SIZE)


class RatingOperations:
    """
    Outcome finalizer plus leaderboard, rating and head-to-head reads.
    """

    def __init__(self, database, settings: Optional[RatingSettings] = None):
        """Initialize with database instance and optional rating settings"""
        self.db = database
        self.settings = settings or RatingSettings.from_config()
        self.logger = logger

    # ============================================================================
    # Finalizer
    # ============================================================================

    async def finalize_result(
        self,
        session: AsyncSession,
        match: Match,
        status,
        winner=None,
    ) -> bool:
        """
        Score a terminal round exactly once.

        Args:
            session: The caller's open transaction
            match: Persisted match whose current round just ended
            status: Terminal status of the round
            winner: Winning symbol, None for a draw

        Returns:
            True if this call scored the round, False for every no-op path
            (not terminal, open seat, already scored, no decisive winner)
        """
        status = MatchStatus(status)
        winner = Symbol(winner) if winner is not None else None

        if not status.is_terminal:
            return False

        x_id, o_id = match.player_x_id, match.player_o_id
        if not x_id or not o_id or x_id == o_id:
            self.logger.debug(f"Match {match.id} round {match.round_number} has no rated pairing, skipping")
            return False

        round_number = match.round_number
        score_pair = EloCalculator.compute_score_pair(status, winner)
        if score_pair is None:
            return False
        x_score, o_score = score_pair

        # Load every row first; pending match and move writes reach the
        # database only at the final flush
        with session.no_autoflush:
            existing = await session.execute(
                select(RatingEvent.id)
                .where(RatingEvent.match_id == match.id)
                .where(RatingEvent.round_number == round_number)
                .limit(1)
            )
            if existing.first() is not None:
                self.logger.debug(f"Match {match.id} round {round_number} already finalized, skipping")
                return False

            x_rating = await self.get_or_create_rating(session, x_id)
            o_rating = await self.get_or_create_rating(session, o_id)
            stat = await self._get_or_create_head_to_head(session, x_id, o_id)

        now = utc_now()
        x_before, o_before = x_rating.elo, o_rating.elo
        x_expected = EloCalculator.calculate_expected_score(x_before, o_before)
        o_expected = EloCalculator.calculate_expected_score(o_before, x_before)
        x_k = EloCalculator.get_k_factor(x_rating.games_played, self.settings)
        o_k = EloCalculator.get_k_factor(o_rating.games_played, self.settings)

        x_delta, o_delta = EloCalculator.calculate_match_elo_changes(
            x_before, x_rating.games_played,
            o_before, o_rating.games_played,
            x_score, self.settings
        )

        # Both ratings move in this transaction or neither does
        for rating, delta in ((x_rating, x_delta), (o_rating, o_delta)):
            rating.elo = rating.elo + delta
            rating.games_played = rating.games_played + 1
            rating.provisional_until = self.settings.provisional_games_remaining(rating.games_played)
            rating.updated_at = now

        session.add_all([
            RatingEvent(
                match_id=match.id,
                round_number=round_number,
                player_id=x_id,
                opponent_id=o_id,
                match_result=self._score_to_result(x_score),
                outcome_status=status,
                before_elo=x_before,
                after_elo=x_rating.elo,
                delta=x_delta,
                k_factor=x_k,
                expected_score=x_expected,
                created_at=now,
            ),
            RatingEvent(
                match_id=match.id,
                round_number=round_number,
                player_id=o_id,
                opponent_id=x_id,
                match_result=self._score_to_result(o_score),
                outcome_status=status,
                before_elo=o_before,
                after_elo=o_rating.elo,
                delta=o_delta,
                k_factor=o_k,
                expected_score=o_expected,
                created_at=now,
            ),
        ])

        if status == MatchStatus.DRAW:
            stat.draws += 1
        elif (x_id if winner == Symbol.X else o_id) == stat.player_low_id:
            stat.low_wins += 1
        else:
            stat.high_wins += 1
        stat.last_played_at = now

        # A stale rating, counter or match version, or a duplicate event,
        # fails here inside the caller's retry scope
        await session.flush()

        self.logger.info(
            f"Finalized match {match.id} round {round_number} ({status.value}): "
            f"X {x_id} {x_before}->{x_rating.elo} ({EloCalculator.format_elo_change(x_delta)}), "
            f"O {o_id} {o_before}->{o_rating.elo} ({EloCalculator.format_elo_change(o_delta)})"
        )
        return True

    async def get_or_create_rating(self, session: AsyncSession, player_id: str) -> Rating:
        """Fetch a player's rating for update, seeding it at the starting Elo if absent"""
        result = await session.execute(
            select(Rating)
            .where(Rating.player_id == player_id)
            .with_for_update()
        )
        rating = result.scalar_one_or_none()
        if rating:
            return rating

        rating = Rating(
            player_id=player_id,
            elo=self.settings.starting_elo,
            games_played=0,
            provisional_until=self.settings.provisional_match_count,
            updated_at=utc_now(),
        )
        session.add(rating)
        return rating

    async def _get_or_create_head_to_head(self, session: AsyncSession, player_a_id: str,
                                          player_b_id: str) -> HeadToHeadStat:
        """Fetch the pair's counter row for update, adding an empty one if absent"""
        low_id, high_id = canonical_pair(player_a_id, player_b_id)

        result = await session.execute(
            select(HeadToHeadStat)
            .where(HeadToHeadStat.player_low_id == low_id)
            .where(HeadToHeadStat.player_high_id == high_id)
            .with_for_update()
        )
        stat = result.scalar_one_or_none()
        if stat is None:
            stat = HeadToHeadStat(
                player_low_id=low_id,
                player_high_id=high_id,
                low_wins=0,
                high_wins=0,
                draws=0,
            )
            session.add(stat)
        return stat

    @staticmethod
    def _score_to_result(score: float) -> MatchResult:
        if score == 1.0:
            return MatchResult.WIN
        if score == 0.0:
            return MatchResult.LOSS
        return MatchResult.DRAW

    # ============================================================================
    # Reads
    # ============================================================================

    async def get_player_rating(self, player_id: str) -> Optional[Rating]:
        """Get a player's rating, None if they have no rated games"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Rating).where(Rating.player_id == player_id)
            )
            return result.scalar_one_or_none()

    async def get_leaderboard(self, limit: int = PaginationConstants.DEFAULT_LEADERBOARD_LIMIT) -> List[LeaderboardEntry]:
        """Get the top rated players by Elo"""
        limit = clamp_limit(limit, PaginationConstants.DEFAULT_LEADERBOARD_LIMIT)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Rating, Player)
                .join(Player, Player.id == Rating.player_id)
                .order_by(Rating.elo.desc(), Rating.games_played.desc(), Rating.player_id)
                .limit(limit)
            )
            return [
                LeaderboardEntry(
                    rank=rank,
                    player_id=rating.player_id,
                    display_name=player.display_name,
                    identity_tier=player.identity_tier or "guest",
                    elo=rating.elo,
                    games_played=rating.games_played,
                    is_provisional=rating.is_provisional,
                )
                for rank, (rating, player) in enumerate(result.all(), start=1)
            ]

    async def get_head_to_head(self, player_a_id: str, player_b_id: str) -> Optional[HeadToHeadRecord]:
        """Get the pair record from player A's point of view, None if they never finished a rated round"""
        low_id, high_id = canonical_pair(player_a_id, player_b_id)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(HeadToHeadStat)
                .where(HeadToHeadStat.player_low_id == low_id)
                .where(HeadToHeadStat.player_high_id == high_id)
            )
            stat = result.scalar_one_or_none()

        if stat is None:
            return None

        return HeadToHeadRecord(
            player_a_id=player_a_id,
            player_b_id=player_b_id,
            player_a_wins=stat.wins_for(player_a_id),
            player_b_wins=stat.wins_for(player_b_id),
            draws=stat.draws,
            last_played_at=stat.last_played_at,
        )

    async def get_round_rating_events(self, match_id: int, round_number: int,
                                      player_id: Optional[str] = None) -> RoundRatingSummary:
        """Get the rating changes of one round, plus the asking player's own delta"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(RatingEvent)
                .where(RatingEvent.match_id == match_id)
                .where(RatingEvent.round_number == round_number)
                .order_by(RatingEvent.created_at, RatingEvent.id)
            )
            events = result.scalars().all()

        changes = [
            RoundRatingChange(
                player_id=event.player_id,
                delta=event.delta,
                before_elo=event.before_elo,
                after_elo=event.after_elo,
            )
            for event in events
        ]
        my_delta = None
        if player_id is not None:
            my_delta = next((c.delta for c in changes if c.player_id == player_id), None)

        return RoundRatingSummary(round_number=round_number, events=changes, my_delta=my_delta)
