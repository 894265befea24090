"""
Value types for the match rules engine.

Everything here is immutable: the engine never mutates a state in place, it
returns a new MatchState built with dataclasses.replace().
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union


class Symbol(str, Enum):
    X = "X"
    O = "O"

    def opponent(self) -> "Symbol":
        return Symbol.O if self is Symbol.X else Symbol.X


class MatchStatus(str, Enum):
    WAITING = "waiting"  # Owned by room management, never produced by the engine
    ACTIVE = "active"
    WON = "won"
    DRAW = "draw"
    TIMEOUT = "timeout"
    RESIGNED = "resigned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    MatchStatus.WON, MatchStatus.DRAW, MatchStatus.TIMEOUT, MatchStatus.RESIGNED
})


class MoveEvent(str, Enum):
    MOVED = "moved"
    WON = "won"
    DRAW = "draw"
    RESIGNED = "resigned"


class MoveFailureReason(str, Enum):
    MATCH_NOT_ACTIVE = "MATCH_NOT_ACTIVE"
    TURN_EXPIRED = "TURN_EXPIRED"
    INVALID_SYMBOL = "INVALID_SYMBOL"
    OUT_OF_BOUNDS = "OUT_OF_BOUNDS"
    CELL_OCCUPIED = "CELL_OCCUPIED"
    NOT_YOUR_TURN = "NOT_YOUR_TURN"


class ConfigErrorCode(str, Enum):
    INVALID_SIZE = "INVALID_SIZE"
    INVALID_WIN_LENGTH = "INVALID_WIN_LENGTH"
    INVALID_TURN_TIME = "INVALID_TURN_TIME"
    INVALID_INTEGER_VALUE = "INVALID_INTEGER_VALUE"


Cell = Optional[Symbol]
Board = Tuple[Cell, ...]


@dataclass(frozen=True)
class GameConfig:
    """Per-match ruleset. Validate with validate_game_config() before use."""
    size: int
    win_length: int
    turn_time_sec: int
    preset_id: Optional[str] = None
    symbol_skin_id: Optional[str] = None

    @property
    def turn_time_ms(self) -> int:
        return self.turn_time_sec * 1000


@dataclass(frozen=True)
class Seats:
    """Participant identity per symbol. An open seat is None."""
    x: Optional[str] = None
    o: Optional[str] = None

    def symbol_for(self, player_id: str) -> Optional[Symbol]:
        if self.x is not None and self.x == player_id:
            return Symbol.X
        if self.o is not None and self.o == player_id:
            return Symbol.O
        return None

    @property
    def is_full(self) -> bool:
        return self.x is not None and self.o is not None


@dataclass(frozen=True)
class MatchState:
    match_id: str
    config: GameConfig
    board: Board
    next_player: Symbol
    status: MatchStatus
    turn_number: int
    turn_deadline_at: int  # epoch milliseconds
    players: Seats = field(default_factory=Seats)
    winner: Optional[Symbol] = None
    winning_line: Optional[Tuple[int, ...]] = None
    round_number: int = 1


@dataclass(frozen=True)
class ConfigValidationResult:
    ok: bool
    code: Optional[ConfigErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def success(cls) -> "ConfigValidationResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, code: ConfigErrorCode, message: str) -> "ConfigValidationResult":
        return cls(ok=False, code=code, message=message)


@dataclass(frozen=True)
class MoveApplied:
    event: MoveEvent
    state: MatchState
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class MoveRejected:
    """A rule violation. `state` is what the caller must persist; it differs
    from the input only for TURN_EXPIRED."""
    reason: MoveFailureReason
    state: MatchState
    ok: bool = field(default=False, init=False)


MoveResult = Union[MoveApplied, MoveRejected]
