"""
Match rules engine.

Pure, side-effect-free transitions over MatchState. Callers supply the clock
(`now_ms`, epoch milliseconds) and persist whatever state comes back, including
on rejected moves: a late move both fails and converts the match to a timeout.

Rule violations are returned as MoveRejected with a stable reason code. Only
caller defects (building a match from an invalid config, asking for a rematch
of a live match) raise.
"""

from dataclasses import replace
from typing import List, Optional, Sequence

from gridduel.constants import BoardConstants
from gridduel.engine.types import (
    Board, ConfigErrorCode, ConfigValidationResult, GameConfig, MatchState,
    MatchStatus, MoveApplied, MoveEvent, MoveFailureReason, MoveRejected,
    MoveResult, Seats, Symbol
)
from gridduel.utils.exceptions import GameConfigError, InvalidTransitionError

# Row/column steps: horizontal, vertical, diagonal, anti-diagonal
DIRECTIONS = ((0, 1), (1, 0), (1, 1), (1, -1))


def _is_integer(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


def _coerce_symbol(value) -> Optional[Symbol]:
    try:
        return Symbol(value)
    except ValueError:
        return None


def validate_game_config(config: GameConfig) -> ConfigValidationResult:
    """
    Check a ruleset against the board, win-length and clock bounds.

    Returns:
        ConfigValidationResult with ok=True, or the first violated code
        (integers first, then size, win length, turn time).
    """
    size, win_length, turn_time_sec = config.size, config.win_length, config.turn_time_sec

    if not (_is_integer(size) and _is_integer(win_length) and _is_integer(turn_time_sec)):
        return ConfigValidationResult.failure(
            ConfigErrorCode.INVALID_INTEGER_VALUE,
            "size, win_length, and turn_time_sec must be integers."
        )

    if size < BoardConstants.MIN_SIZE or size > BoardConstants.MAX_SIZE:
        return ConfigValidationResult.failure(
            ConfigErrorCode.INVALID_SIZE,
            f"Board size must be between {BoardConstants.MIN_SIZE} and {BoardConstants.MAX_SIZE}."
        )

    if win_length < BoardConstants.MIN_WIN_LENGTH or win_length > size:
        return ConfigValidationResult.failure(
            ConfigErrorCode.INVALID_WIN_LENGTH,
            "Win length must be between 3 and board size."
        )

    if turn_time_sec < BoardConstants.MIN_TURN_TIME_SEC or turn_time_sec > BoardConstants.MAX_TURN_TIME_SEC:
        return ConfigValidationResult.failure(
            ConfigErrorCode.INVALID_TURN_TIME,
            f"Turn timer must be between {BoardConstants.MIN_TURN_TIME_SEC} "
            f"and {BoardConstants.MAX_TURN_TIME_SEC} seconds."
        )

    return ConfigValidationResult.success()


def ensure_valid_config(config: GameConfig) -> GameConfig:
    """Raise GameConfigError unless the config validates."""
    validation = validate_game_config(config)
    if not validation.ok:
        raise GameConfigError(validation.code.value, validation.message)
    return config


def create_empty_board(size: int) -> Board:
    return (None,) * (int(size) * int(size))


def create_new_match_state(
    match_id: str,
    config: GameConfig,
    created_at_ms: int,
    players: Optional[Seats] = None,
    first_player: Symbol = Symbol.X,
    round_number: int = 1,
) -> MatchState:
    """
    Build the opening state of a round.

    Raises:
        GameConfigError: If the config fails validation
    """
    ensure_valid_config(config)

    return MatchState(
        match_id=match_id,
        config=config,
        board=create_empty_board(config.size),
        next_player=Symbol(first_player),
        status=MatchStatus.ACTIVE,
        turn_number=1,
        turn_deadline_at=created_at_ms + config.turn_time_ms,
        players=players or Seats(),
        round_number=round_number,
    )


def is_turn_expired(state: MatchState, now_ms: int) -> bool:
    return state.status is MatchStatus.ACTIVE and now_ms > state.turn_deadline_at


def apply_move(state: MatchState, cell_index: int, symbol, now_ms: int) -> MoveResult:
    """
    Apply one move and report what happened.

    Checks run in a fixed order: match active, clock, symbol, turn, bounds,
    occupancy. The first failing check decides the reason code.
    """
    if state.status is not MatchStatus.ACTIVE:
        return MoveRejected(MoveFailureReason.MATCH_NOT_ACTIVE, state)

    if is_turn_expired(state, now_ms):
        return MoveRejected(MoveFailureReason.TURN_EXPIRED, resolve_timeout(state, now_ms))

    player = _coerce_symbol(symbol)
    if player is None:
        return MoveRejected(MoveFailureReason.INVALID_SYMBOL, state)

    if player is not state.next_player:
        return MoveRejected(MoveFailureReason.NOT_YOUR_TURN, state)

    if not _is_integer(cell_index) or cell_index < 0 or cell_index >= len(state.board):
        return MoveRejected(MoveFailureReason.OUT_OF_BOUNDS, state)
    cell_index = int(cell_index)

    if state.board[cell_index] is not None:
        return MoveRejected(MoveFailureReason.CELL_OCCUPIED, state)

    board = list(state.board)
    board[cell_index] = player
    board = tuple(board)

    winning_line = detect_winning_line(board, state.config.size, state.config.win_length, cell_index)

    if winning_line:
        return MoveApplied(MoveEvent.WON, replace(
            state,
            board=board,
            status=MatchStatus.WON,
            winner=player,
            winning_line=tuple(winning_line),
        ))

    if all(cell is not None for cell in board):
        return MoveApplied(MoveEvent.DRAW, replace(
            state,
            board=board,
            status=MatchStatus.DRAW,
            winner=None,
            winning_line=None,
        ))

    return MoveApplied(MoveEvent.MOVED, replace(
        state,
        board=board,
        next_player=state.next_player.opponent(),
        turn_number=state.turn_number + 1,
        turn_deadline_at=now_ms + state.config.turn_time_ms,
    ))


def resolve_timeout(state: MatchState, now_ms: int) -> MatchState:
    """
    Award the match to the player who was not due to move.

    Idempotent: any non-active state is returned unchanged.
    """
    if state.status is not MatchStatus.ACTIVE:
        return state

    return replace(
        state,
        status=MatchStatus.TIMEOUT,
        winner=state.next_player.opponent(),
        turn_deadline_at=now_ms,
    )


def resign(state: MatchState, symbol, now_ms: int) -> MoveResult:
    """Concede an active match; the other symbol wins. Not bound to the turn clock."""
    if state.status is not MatchStatus.ACTIVE:
        return MoveRejected(MoveFailureReason.MATCH_NOT_ACTIVE, state)

    player = _coerce_symbol(symbol)
    if player is None:
        return MoveRejected(MoveFailureReason.INVALID_SYMBOL, state)

    return MoveApplied(MoveEvent.RESIGNED, replace(
        state,
        status=MatchStatus.RESIGNED,
        winner=player.opponent(),
        winning_line=None,
    ))


def start_rematch(state: MatchState, now_ms: int, first_player: Symbol = Symbol.X) -> MatchState:
    """
    Open the next round of a finished match: same config and seats, fresh board.

    Raises:
        InvalidTransitionError: If the current round has not ended
    """
    if not state.status.is_terminal:
        raise InvalidTransitionError("start a rematch", state.status.value)

    return create_new_match_state(
        match_id=state.match_id,
        config=state.config,
        created_at_ms=now_ms,
        players=state.players,
        first_player=first_player,
        round_number=state.round_number + 1,
    )


def detect_winning_line(board: Sequence, size: int, win_length: int, last_index: int) -> List[int]:
    """
    Find a winning run through the most recently played cell.

    Only the four lines through `last_index` are walked, since any new win
    must include the latest placement. The run is returned in line traversal
    order (backward end first); an empty list means no win.
    """
    symbol = board[last_index]
    if symbol is None:
        return []

    row, col = divmod(last_index, size)

    for d_row, d_col in DIRECTIONS:
        backward = []
        r, c = row - d_row, col - d_col
        while _is_inside(size, r, c) and board[r * size + c] == symbol:
            backward.append(r * size + c)
            r, c = r - d_row, c - d_col

        forward = []
        r, c = row + d_row, col + d_col
        while _is_inside(size, r, c) and board[r * size + c] == symbol:
            forward.append(r * size + c)
            r, c = r + d_row, c + d_col

        line = backward[::-1] + [last_index] + forward
        if len(line) >= win_length:
            return line

    return []


def _is_inside(size: int, row: int, col: int) -> bool:
    return 0 <= row < size and 0 <= col < size
