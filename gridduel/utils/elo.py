import math
from dataclasses import dataclass
from typing import Optional, Tuple

from gridduel.config import Config
from gridduel.engine.types import MatchStatus, Symbol


@dataclass(frozen=True)
class RatingSettings:
    """Elo tuning values. Defaults come from Config so deployments can override them."""
    starting_elo: int
    k_factor_provisional: int
    k_factor_standard: int
    provisional_match_count: int

    @classmethod
    def from_config(cls) -> "RatingSettings":
        return cls(
            starting_elo=Config.STARTING_ELO,
            k_factor_provisional=Config.K_FACTOR_PROVISIONAL,
            k_factor_standard=Config.K_FACTOR_STANDARD,
            provisional_match_count=Config.PROVISIONAL_MATCH_COUNT,
        )

    def provisional_games_remaining(self, games_played: int) -> int:
        return max(0, self.provisional_match_count - games_played)


class EloCalculator:
    """Handles Elo rating calculations for rated matches"""

    @staticmethod
    def calculate_expected_score(rating_a: int, rating_b: int) -> float:
        """
        Calculate the expected score for player A against player B

        Args:
            rating_a: Player A's current Elo rating
            rating_b: Player B's current Elo rating

        Returns:
            Expected score (0.0 to 1.0) for player A
        """
        return 1 / (1 + math.pow(10, (rating_b - rating_a) / 400))

    @staticmethod
    def get_k_factor(games_played: int, settings: Optional[RatingSettings] = None) -> int:
        """
        Get the K-factor based on number of rated games played

        Args:
            games_played: Number of rated games the player has finished
            settings: Rating settings, defaults to Config values

        Returns:
            K-factor to use in Elo calculation
        """
        settings = settings or RatingSettings.from_config()
        if games_played < settings.provisional_match_count:
            return settings.k_factor_provisional
        return settings.k_factor_standard

    @staticmethod
    def calculate_elo_change(current_rating: int, opponent_rating: int,
                             actual_score: float, games_played: int,
                             settings: Optional[RatingSettings] = None) -> int:
        """
        Calculate the Elo rating change for a player

        Args:
            current_rating: Player's current Elo rating
            opponent_rating: Opponent's current Elo rating
            actual_score: Actual score (1.0 for win, 0.5 for draw, 0.0 for loss)
            games_played: Number of rated games the player has finished
            settings: Rating settings, defaults to Config values

        Returns:
            Elo rating change (can be positive, negative or zero)
        """
        expected_score = EloCalculator.calculate_expected_score(current_rating, opponent_rating)
        k_factor = EloCalculator.get_k_factor(games_played, settings)

        elo_change = k_factor * (actual_score - expected_score)
        return round(elo_change)

    @staticmethod
    def compute_score_pair(status: MatchStatus, winner: Optional[Symbol]) -> Optional[Tuple[float, float]]:
        """
        Map a terminal outcome to (x_score, o_score).

        Returns:
            (0.5, 0.5) for a draw, (1.0, 0.0) or (0.0, 1.0) for a decisive
            result, None when the outcome names no winner and is not a draw
        """
        if status == MatchStatus.DRAW:
            return 0.5, 0.5
        if winner == Symbol.X:
            return 1.0, 0.0
        if winner == Symbol.O:
            return 0.0, 1.0
        return None

    @staticmethod
    def calculate_match_elo_changes(player1_rating: int, player1_games: int,
                                    player2_rating: int, player2_games: int,
                                    player1_score: float,
                                    settings: Optional[RatingSettings] = None) -> Tuple[int, int]:
        """
        Calculate Elo changes for both players in a match

        Args:
            player1_rating: Player 1's current Elo rating
            player1_games: Player 1's rated games played
            player2_rating: Player 2's current Elo rating
            player2_games: Player 2's rated games played
            player1_score: Player 1's actual score; player 2 scores the complement
            settings: Rating settings, defaults to Config values

        Returns:
            Tuple of (player1_elo_change, player2_elo_change)
        """
        player2_score = 1.0 - player1_score

        player1_change = EloCalculator.calculate_elo_change(
            player1_rating, player2_rating, player1_score, player1_games, settings
        )

        player2_change = EloCalculator.calculate_elo_change(
            player2_rating, player1_rating, player2_score, player2_games, settings
        )

        return player1_change, player2_change

    @staticmethod
    def format_elo_change(elo_change: int) -> str:
        """Format Elo change for display"""
        if elo_change > 0:
            return f"+{elo_change}"
        elif elo_change < 0:
            return str(elo_change)
        else:
            return "±0"
