import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Float, BigInteger,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

from gridduel.constants import BoardConstants, RoomConstants
from gridduel.engine.types import (
    Board, GameConfig, MatchState, MatchStatus, Seats, Symbol
)

Base = declarative_base()


class MatchResult(Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_player_id() -> str:
    return str(uuid.uuid4())


def encode_board(board: Board) -> str:
    """One character per cell: X, O or '.' for empty."""
    return "".join(cell.value if cell is not None else BoardConstants.EMPTY_CELL for cell in board)


def decode_board(text: str) -> Board:
    return tuple(None if ch == BoardConstants.EMPTY_CELL else Symbol(ch) for ch in text)


class Player(Base):
    __tablename__ = 'players'

    # String ids so that head-to-head rows can order a pair lexicographically
    id = Column(String(36), primary_key=True, default=new_player_id)
    display_name = Column(String(100), nullable=False)
    identity_tier = Column(String(20), default="guest")  # guest | secured

    # Metadata
    created_at = Column(DateTime, default=utc_now)
    last_seen_at = Column(DateTime, default=utc_now)

    rating = relationship("Rating", back_populates="player", uselist=False)

    def __repr__(self):
        return f"<Player(id='{self.id}', display_name='{self.display_name}')>"


class Match(Base):
    """
    Persisted match record: one row per room, reused across rematch rounds.

    `version` is the optimistic concurrency token. SQLAlchemy adds it to the
    WHERE clause of every UPDATE and bumps it, so two handlers racing on the
    same read cannot both commit; the loser gets StaleDataError.
    """
    __tablename__ = 'matches'

    id = Column(Integer, primary_key=True)
    room_code = Column(String(RoomConstants.MAX_ROOM_CODE_LENGTH), nullable=False, unique=True, index=True)

    # Ruleset (immutable after creation)
    size = Column(Integer, nullable=False)
    win_length = Column(Integer, nullable=False)
    turn_time_sec = Column(Integer, nullable=False)
    preset_id = Column(String(50), nullable=True)
    symbol_skin_id = Column(String(50), nullable=True)

    # Round state
    status = Column(SQLEnum(MatchStatus), nullable=False, default=MatchStatus.WAITING, index=True)
    board = Column(String(BoardConstants.MAX_SIZE ** 2), nullable=False)
    next_player = Column(SQLEnum(Symbol), nullable=False, default=Symbol.X)
    round_number = Column(Integer, nullable=False, default=1)
    turn_number = Column(Integer, nullable=False, default=1)
    turn_deadline_at = Column(BigInteger, nullable=False)  # epoch ms, server clock
    winner = Column(SQLEnum(Symbol), nullable=True)
    winning_line = Column(Text, nullable=True)  # JSON list of cell indices
    last_move_index = Column(Integer, nullable=True)
    rematch_requested_by = Column(SQLEnum(Symbol), nullable=True)

    # Seats: explicit nullable columns, an open seat is NULL
    player_x_id = Column(String(36), ForeignKey('players.id'), nullable=True, index=True)
    player_o_id = Column(String(36), ForeignKey('players.id'), nullable=True, index=True)

    archived_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    # Metadata
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    player_x = relationship("Player", foreign_keys=[player_x_id])
    player_o = relationship("Player", foreign_keys=[player_o_id])
    moves = relationship("Move", back_populates="match", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    @property
    def config(self) -> GameConfig:
        return GameConfig(
            size=self.size,
            win_length=self.win_length,
            turn_time_sec=self.turn_time_sec,
            preset_id=self.preset_id,
            symbol_skin_id=self.symbol_skin_id,
        )

    @property
    def seats(self) -> Seats:
        return Seats(x=self.player_x_id, o=self.player_o_id)

    @property
    def winning_cells(self) -> Optional[List[int]]:
        return json.loads(self.winning_line) if self.winning_line else None

    def to_engine_state(self) -> MatchState:
        """Convert the persisted record into the engine's working state"""
        line = self.winning_cells
        return MatchState(
            match_id=str(self.id),
            config=self.config,
            board=decode_board(self.board),
            next_player=self.next_player,
            status=self.status,
            turn_number=self.turn_number,
            turn_deadline_at=self.turn_deadline_at,
            players=self.seats,
            winner=self.winner,
            winning_line=tuple(line) if line is not None else None,
            round_number=self.round_number,
        )

    def apply_engine_state(self, state: MatchState) -> None:
        """Copy an engine state back onto the record (seats and config are not touched)"""
        self.board = encode_board(state.board)
        self.next_player = state.next_player
        self.status = state.status
        self.turn_number = state.turn_number
        self.turn_deadline_at = state.turn_deadline_at
        self.winner = state.winner
        self.winning_line = json.dumps(list(state.winning_line)) if state.winning_line else None
        self.round_number = state.round_number
        if state.status.is_terminal:
            self.rematch_requested_by = None

    def __repr__(self):
        return (f"<Match(id={self.id}, room='{self.room_code}', status='{self.status.value}', "
                f"round={self.round_number}, turn={self.turn_number})>")


class Move(Base):
    """Append-only log of accepted moves"""
    __tablename__ = 'moves'

    id = Column(Integer, primary_key=True)
    match_id = Column(Integer, ForeignKey('matches.id'), nullable=False, index=True)
    round_number = Column(Integer, nullable=False)
    turn = Column(Integer, nullable=False)
    player_id = Column(String(36), ForeignKey('players.id'), nullable=False)
    symbol = Column(SQLEnum(Symbol), nullable=False)
    cell_index = Column(Integer, nullable=False)

    played_at = Column(BigInteger, nullable=False)   # epoch ms
    deadline_at = Column(BigInteger, nullable=False)  # deadline the move was played against

    match = relationship("Match", back_populates="moves")

    __table_args__ = (
        UniqueConstraint('match_id', 'round_number', 'turn', name='uq_move_per_turn'),
    )

    def __repr__(self):
        return f"<Move(match={self.match_id}, round={self.round_number}, turn={self.turn}, {self.symbol.value}@{self.cell_index})>"


class Rating(Base):
    """
    Per-player skill record, created lazily on the first rated result.

    Versioned like Match: two rounds that share a player cannot both apply
    a delta to the same read of elo and games_played.
    """
    __tablename__ = 'ratings'

    id = Column(Integer, primary_key=True)
    player_id = Column(String(36), ForeignKey('players.id'), nullable=False, unique=True)

    elo = Column(Integer, nullable=False, index=True)
    games_played = Column(Integer, nullable=False, default=0)
    provisional_until = Column(Integer, nullable=False, default=0)  # provisional games remaining

    version = Column(Integer, nullable=False)

    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    player = relationship("Player", back_populates="rating")

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_provisional(self) -> bool:
        return self.provisional_until > 0

    def __repr__(self):
        return f"<Rating(player='{self.player_id}', elo={self.elo}, games={self.games_played})>"


class RatingEvent(Base):
    """
    Immutable audit row for one Elo adjustment.

    The (match, round, player) unique key is the double-scoring guard: a
    racing second finalize fails on insert and its whole transaction rolls back.
    """
    __tablename__ = 'rating_events'

    id = Column(Integer, primary_key=True)
    match_id = Column(Integer, ForeignKey('matches.id'), nullable=False, index=True)
    round_number = Column(Integer, nullable=False)
    player_id = Column(String(36), ForeignKey('players.id'), nullable=False, index=True)

    before_elo = Column(Integer, nullable=False)
    after_elo = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)

    # Calculation context
    opponent_id = Column(String(36), ForeignKey('players.id'), nullable=False)
    match_result = Column(SQLEnum(MatchResult), nullable=False)
    outcome_status = Column(SQLEnum(MatchStatus), nullable=False)
    k_factor = Column(Integer, nullable=False)
    expected_score = Column(Float, nullable=False)

    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint('match_id', 'round_number', 'player_id', name='uq_rating_event_per_round'),
        Index('ix_rating_events_match_round', 'match_id', 'round_number'),
    )

    def __repr__(self):
        return (f"<RatingEvent(match={self.match_id}, round={self.round_number}, "
                f"player='{self.player_id}', {self.before_elo}->{self.after_elo})>")


class HeadToHeadStat(Base):
    """One counter row per unordered player pair, keyed by (low id, high id)"""
    __tablename__ = 'head_to_head_stats'

    id = Column(Integer, primary_key=True)
    player_low_id = Column(String(36), ForeignKey('players.id'), nullable=False)
    player_high_id = Column(String(36), ForeignKey('players.id'), nullable=False)

    low_wins = Column(Integer, nullable=False, default=0)
    high_wins = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)

    last_played_at = Column(DateTime, nullable=False, default=utc_now)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint('player_low_id', 'player_high_id', name='uq_head_to_head_pair'),
        CheckConstraint('player_low_id < player_high_id', name='ck_head_to_head_canonical_order'),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def total_games(self) -> int:
        return self.low_wins + self.high_wins + self.draws

    def wins_for(self, player_id: str) -> int:
        if player_id == self.player_low_id:
            return self.low_wins
        if player_id == self.player_high_id:
            return self.high_wins
        raise ValueError(f"Player {player_id} is not part of this pairing")

    def __repr__(self):
        return (f"<HeadToHeadStat(low='{self.player_low_id}', high='{self.player_high_id}', "
                f"{self.low_wins}-{self.high_wins}-{self.draws})>")
