"""
Rating data models.

Immutable data transfer objects returned by the rating and history reads.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class LeaderboardEntry:
    """Single leaderboard row."""
    rank: int
    player_id: str
    display_name: str
    identity_tier: str
    elo: int
    games_played: int
    is_provisional: bool


@dataclass(frozen=True)
class RoundRatingChange:
    """One player's Elo movement for a finished round."""
    player_id: str
    delta: int
    before_elo: int
    after_elo: int


@dataclass(frozen=True)
class RoundRatingSummary:
    """All rating changes recorded for one (match, round)."""
    round_number: int
    events: List[RoundRatingChange]
    my_delta: Optional[int] = None


@dataclass(frozen=True)
class HeadToHeadRecord:
    """Pair record seen from player A's side."""
    player_a_id: str
    player_b_id: str
    player_a_wins: int
    player_b_wins: int
    draws: int
    last_played_at: Optional[datetime]

    @property
    def total_games(self) -> int:
        return self.player_a_wins + self.player_b_wins + self.draws


@dataclass(frozen=True)
class HistoryEntry:
    """One scored match in a player's history."""
    match_id: int
    room_code: str
    board_size: int
    win_length: int
    status: str
    result: str  # win | loss | draw
    opponent_name: str
    elo_delta: int
    played_at: Optional[datetime]
    round_number: int
    archived: bool
