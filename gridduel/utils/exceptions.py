"""
Custom exceptions for GridDuel with user-friendly error messages.

Expected rule violations (occupied cell, wrong turn, expired clock...) are
never raised; the engine returns them as reason codes. These exceptions cover
caller mistakes and infrastructure failures only.
"""

class GridDuelException(Exception):
    """Base exception for GridDuel errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class GameConfigError(GridDuelException):
    """Raised when a match is built from, or a room created with, an invalid ruleset."""
    def __init__(self, code: str, message: str):
        super().__init__(
            f"Invalid game config ({code}): {message}",
            f"❌ {message}"
        )
        self.code = code

class InvalidTransitionError(GridDuelException):
    """Raised when the engine is asked for a transition the state cannot make."""
    def __init__(self, operation: str, status: str):
        super().__init__(
            f"Cannot {operation} from status '{status}'",
            "❌ That action is not available right now."
        )
        self.operation = operation
        self.status = status

class MatchNotFoundError(GridDuelException):
    """Raised when a match id or room code does not resolve."""
    def __init__(self, identifier):
        super().__init__(
            f"Match '{identifier}' not found",
            "❌ Room not found."
        )

class RoomCodeError(GridDuelException):
    """Raised when a room code is malformed or already taken."""
    def __init__(self, room_code: str, reason: str):
        super().__init__(
            f"Room code '{room_code}' rejected: {reason}",
            f"❌ {reason}"
        )

class RoomFullError(GridDuelException):
    """Raised when both seats of a room are already taken."""
    def __init__(self, room_code: str):
        super().__init__(
            f"Room '{room_code}' already has two players",
            "❌ Room is already full."
        )

class MatchPermissionError(GridDuelException):
    """Raised when a player acts on a match they are not seated in."""
    def __init__(self, match_id, player_id: str):
        super().__init__(
            f"Player {player_id} is not a participant in match {match_id}",
            "❌ You are not a participant in this match."
        )

class MatchConcurrencyError(GridDuelException):
    """Raised when a match transition keeps losing optimistic races."""
    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"Transition {operation} failed after {attempts} attempts",
            "❌ The match changed while your move was processed. Please try again."
        )
