"""
Game-wide constants for GridDuel.

Rule bounds and paging limits live here so that the engine, the handlers and
the tests agree on a single set of numbers.
"""

class BoardConstants:
    """Bounds for a match ruleset."""

    MIN_SIZE = 3
    MAX_SIZE = 10

    # Win length must also not exceed the board side
    MIN_WIN_LENGTH = 3

    MIN_TURN_TIME_SEC = 5
    MAX_TURN_TIME_SEC = 180

    # Board text encoding used by the matches table
    EMPTY_CELL = "."

class RoomConstants:
    """Constants for room codes."""

    ROOM_CODE_PATTERN = r"^[A-Z0-9-]{3,20}$"
    MAX_ROOM_CODE_LENGTH = 20

class PaginationConstants:
    """Constants for paginated reads."""

    DEFAULT_LEADERBOARD_LIMIT = 25
    DEFAULT_HISTORY_LIMIT = 50
    MAX_PAGE_SIZE = 100
