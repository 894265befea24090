"""
Rules engine for GridDuel matches.

Stateless functions over immutable MatchState values: config validation,
move legality, win/draw detection, turn-clock expiry, resignation and rematch.
Safe to call from any number of concurrent handlers.
"""

from .presets import GAME_PRESETS, GamePreset, get_preset
from .rules import (
    apply_move, create_empty_board, create_new_match_state, detect_winning_line,
    ensure_valid_config, is_turn_expired, resign, resolve_timeout, start_rematch,
    validate_game_config
)
from .types import (
    ConfigErrorCode, ConfigValidationResult, GameConfig, MatchState, MatchStatus,
    MoveApplied, MoveEvent, MoveFailureReason, MoveRejected, MoveResult, Seats,
    Symbol, TERMINAL_STATUSES
)

__all__ = [
    'GAME_PRESETS', 'GamePreset', 'get_preset',
    'apply_move', 'create_empty_board', 'create_new_match_state', 'detect_winning_line',
    'ensure_valid_config', 'is_turn_expired', 'resign', 'resolve_timeout', 'start_rematch',
    'validate_game_config',
    'ConfigErrorCode', 'ConfigValidationResult', 'GameConfig', 'MatchState', 'MatchStatus',
    'MoveApplied', 'MoveEvent', 'MoveFailureReason', 'MoveRejected', 'MoveResult', 'Seats',
    'Symbol', 'TERMINAL_STATUSES',
]
