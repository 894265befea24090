"""
Match Operations Module

Transactional handlers around the rules engine: room lifecycle, moves,
timeout polls, resignation and rematches.

Every transition follows the same shape:
1. Read the persisted match in a fresh transaction
2. Convert it to a MatchState and ask the engine for the next state
3. Write the returned state back (even when the engine rejected the move)
4. If the round just became terminal, finalize it in the same transaction

The match row carries an optimistic version column. When two handlers race
on one match (two moves, or a move and a timeout poll), only the first commit
wins; the other gets a conflict, re-runs from step 1 and sees the new state,
so a move can never land in a round that a timeout already closed.
"""

import re
import time
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gridduel.constants import RoomConstants
from gridduel.data_models.matches import HandlerReason, HandlerResult
from gridduel.database.models import Match, Move, encode_board
from gridduel.engine import (
    GameConfig, MatchState, MatchStatus, MoveFailureReason, Symbol,
    apply_move, create_empty_board, create_new_match_state, ensure_valid_config,
    resign, resolve_timeout, start_rematch
)
from gridduel.operations.rating_operations import RatingOperations
from gridduel.services.base import BaseService
from gridduel.utils.exceptions import (
    MatchNotFoundError, RoomCodeError, RoomFullError
)
from gridduel.utils.logger import setup_logger

logger = setup_logger(__name__)


def system_clock_ms() -> int:
    return int(time.time() * 1000)


def normalize_room_code(room_code: Optional[str]) -> Optional[str]:
    """
    Trim and upper-case a room code.

    Returns:
        The normalized code, or None for an empty input

    Raises:
        RoomCodeError: If the code has invalid characters or length
    """
    if not room_code:
        return None

    normalized = room_code.strip().upper()
    if not re.match(RoomConstants.ROOM_CODE_PATTERN, normalized):
        raise RoomCodeError(room_code, "Room code must be 3-20 chars using A-Z, 0-9, or -.")
    return normalized


class MatchOperations(BaseService):
    """
    Handlers for every match transition.

    The server clock is injectable so that callers (and tests) decide what
    "now" is; the engine itself never reads time.
    """

    def __init__(self, database, rating_operations: Optional[RatingOperations] = None,
                 clock: Optional[Callable[[], int]] = None):
        """Initialize with database instance, finalizer and optional clock"""
        super().__init__(lambda: database.async_session())
        self.db = database
        self.ratings = rating_operations or RatingOperations(database)
        self.clock = clock or system_clock_ms
        self.logger = logger

    # ============================================================================
    # Room lifecycle
    # ============================================================================

    async def create_room(self, host_player_id: str, config: GameConfig, room_code: str) -> Match:
        """
        Create a waiting room with the host seated as X.

        Raises:
            GameConfigError: If the config is invalid (nothing is written)
            RoomCodeError: If the code is malformed or already in use
        """
        ensure_valid_config(config)
        code = normalize_room_code(room_code)
        if code is None:
            raise RoomCodeError("", "Room code is required.")

        async def _create(session: AsyncSession) -> Match:
            existing = await self._find_by_room_code(session, code)
            if existing:
                raise RoomCodeError(code, "Room code already exists.")

            now = self.clock()
            match = Match(
                room_code=code,
                size=config.size,
                win_length=config.win_length,
                turn_time_sec=config.turn_time_sec,
                preset_id=config.preset_id,
                symbol_skin_id=config.symbol_skin_id,
                status=MatchStatus.WAITING,
                board=encode_board(create_empty_board(config.size)),
                player_x_id=host_player_id,
                next_player=Symbol.X,
                round_number=1,
                turn_number=1,
                turn_deadline_at=now + config.turn_time_ms,
            )
            session.add(match)
            await session.flush()
            self.logger.info(
                f"Created room {code} (match {match.id}) for host {host_player_id}: "
                f"{config.size}x{config.size}, win {config.win_length}, {config.turn_time_sec}s"
            )
            return match

        return await self.run_in_transaction("create_room", _create)

    async def join_room(self, room_code: str, player_id: str) -> HandlerResult:
        """
        Take the open seat of a room and start the match.

        A player already seated gets their symbol back without changes.

        Raises:
            MatchNotFoundError: If the room does not exist
            RoomFullError: If both seats belong to other players
        """
        code = normalize_room_code(room_code)
        if code is None:
            raise MatchNotFoundError(room_code)

        async def _join(session: AsyncSession) -> HandlerResult:
            match = await self._find_by_room_code(session, code)
            if match is None:
                raise MatchNotFoundError(code)

            seated_as = match.seats.symbol_for(player_id)
            if seated_as is not None:
                return HandlerResult.success(match_id=match.id, joined_as=seated_as.value)

            if match.seats.is_full:
                raise RoomFullError(code)

            if match.player_x_id is None:
                match.player_x_id = player_id
                joined_as = Symbol.X
            else:
                match.player_o_id = player_id
                joined_as = Symbol.O

            if match.seats.is_full:
                state = create_new_match_state(
                    match_id=str(match.id),
                    config=match.config,
                    created_at_ms=self.clock(),
                    players=match.seats,
                    round_number=match.round_number,
                )
                match.apply_engine_state(state)
                match.rematch_requested_by = None
                self.logger.info(f"Room {code} is active: X={match.player_x_id} O={match.player_o_id}")

            return HandlerResult.success(match_id=match.id, joined_as=joined_as.value)

        return await self.run_in_transaction("join_room", _join)

    async def get_match_by_room_code(self, room_code: str) -> Optional[Match]:
        """Get a match by room code, None for unknown or malformed codes"""
        try:
            code = normalize_room_code(room_code)
        except RoomCodeError:
            return None
        if code is None:
            return None

        async with self.db.get_session() as session:
            return await self._find_by_room_code(session, code)

    async def get_match_by_id(self, match_id: int) -> Optional[Match]:
        """Get a match by id"""
        async with self.db.get_session() as session:
            return await session.get(Match, match_id)

    # ============================================================================
    # Transitions
    # ============================================================================

    async def make_move(self, match_id: int, cell_index: int, player_id: str) -> HandlerResult:
        """
        Submit a move for the player's seat.

        A move that arrives after the deadline is rejected with TURN_EXPIRED
        and converts the round to a timeout loss for the mover; that state is
        persisted and finalized like any other terminal transition.
        """
        async def _move(session: AsyncSession) -> HandlerResult:
            match = await self._load_match(session, match_id)

            symbol = match.seats.symbol_for(player_id)
            if symbol is None:
                return HandlerResult.failure(HandlerReason.PLAYER_NOT_JOINED)

            now = self.clock()
            state = match.to_engine_state()
            result = apply_move(state, cell_index, symbol, now)

            if not result.ok:
                if result.reason == MoveFailureReason.TURN_EXPIRED:
                    await self._commit_terminal(session, match, result.state, "late move")
                return HandlerResult.failure(result.reason, status=result.state.status.value)

            session.add(Move(
                match_id=match.id,
                round_number=match.round_number,
                turn=match.turn_number,
                player_id=player_id,
                symbol=symbol,
                cell_index=cell_index,
                played_at=now,
                deadline_at=match.turn_deadline_at,
            ))
            match.last_move_index = cell_index

            if result.state.status.is_terminal:
                await self._commit_terminal(session, match, result.state, result.event.value)
            else:
                match.apply_engine_state(result.state)

            return HandlerResult.success(
                event=result.event.value,
                status=result.state.status.value,
                winner=result.state.winner.value if result.state.winner else None,
                winning_line=list(result.state.winning_line) if result.state.winning_line else None,
            )

        return await self.run_in_transaction("make_move", _move)

    async def tick_timeout(self, match_id: int) -> HandlerResult:
        """
        Timeout poll: close the round if the server clock is past the deadline.

        Safe to call redundantly; a round that is already over reports
        MATCH_NOT_ACTIVE and is never scored twice.
        """
        async def _tick(session: AsyncSession) -> HandlerResult:
            match = await self._load_match(session, match_id)

            if match.status != MatchStatus.ACTIVE:
                return HandlerResult.failure(HandlerReason.MATCH_NOT_ACTIVE)

            now = self.clock()
            if now <= match.turn_deadline_at:
                return HandlerResult.failure(
                    HandlerReason.TURN_STILL_ACTIVE,
                    remaining_ms=max(0, match.turn_deadline_at - now),
                )

            timed_out = resolve_timeout(match.to_engine_state(), now)
            await self._commit_terminal(session, match, timed_out, "timeout poll")

            return HandlerResult.success(status=timed_out.status.value, winner=timed_out.winner.value)

        return await self.run_in_transaction("tick_timeout", _tick)

    async def resign(self, match_id: int, player_id: str) -> HandlerResult:
        """Concede the current round; the opponent wins"""
        async def _resign(session: AsyncSession) -> HandlerResult:
            match = await self._load_match(session, match_id)

            if match.status != MatchStatus.ACTIVE:
                return HandlerResult.failure(HandlerReason.MATCH_NOT_ACTIVE)

            symbol = match.seats.symbol_for(player_id)
            if symbol is None:
                return HandlerResult.failure(HandlerReason.PLAYER_NOT_JOINED)

            result = resign(match.to_engine_state(), symbol, self.clock())
            if not result.ok:
                return HandlerResult.failure(result.reason)

            await self._commit_terminal(session, match, result.state, f"{symbol.value} resigned")
            return HandlerResult.success(winner=result.state.winner.value)

        return await self.run_in_transaction("resign", _resign)

    async def request_rematch(self, match_id: int, player_id: str) -> HandlerResult:
        """Ask the opponent for another round. One outstanding request at a time."""
        async def _request(session: AsyncSession) -> HandlerResult:
            match = await self._load_match(session, match_id)

            failure = self._check_rematch_preconditions(match)
            if failure:
                return failure

            symbol = match.seats.symbol_for(player_id)
            if symbol is None:
                return HandlerResult.failure(HandlerReason.PLAYER_NOT_JOINED)

            if match.rematch_requested_by is not None:
                return HandlerResult.failure(
                    HandlerReason.REMATCH_ALREADY_REQUESTED,
                    requested_by=match.rematch_requested_by.value,
                )

            match.rematch_requested_by = symbol
            return HandlerResult.success(requested_by=symbol.value)

        return await self.run_in_transaction("request_rematch", _request)

    async def accept_rematch(self, match_id: int, player_id: str) -> HandlerResult:
        """
        Accept the opponent's rematch request and open the next round.

        The new round is a fresh active state; nothing is finalized here.
        """
        async def _accept(session: AsyncSession) -> HandlerResult:
            match = await self._load_match(session, match_id)

            failure = self._check_rematch_preconditions(match)
            if failure:
                return failure

            if match.rematch_requested_by is None:
                return HandlerResult.failure(HandlerReason.REMATCH_NOT_REQUESTED)

            symbol = match.seats.symbol_for(player_id)
            if symbol is None:
                return HandlerResult.failure(HandlerReason.PLAYER_NOT_JOINED)

            if match.rematch_requested_by == symbol:
                return HandlerResult.failure(HandlerReason.CANNOT_ACCEPT_OWN_REQUEST)

            next_round = start_rematch(match.to_engine_state(), self.clock())
            match.apply_engine_state(next_round)
            match.last_move_index = None
            match.rematch_requested_by = None

            self.logger.info(f"Match {match.id} starting round {next_round.round_number}")
            return HandlerResult.success(round_number=next_round.round_number)

        return await self.run_in_transaction("accept_rematch", _accept)

    # ============================================================================
    # Helpers
    # ============================================================================

    async def _commit_terminal(self, session: AsyncSession, match: Match,
                               state: MatchState, cause: str) -> None:
        """Write a terminal state onto the record and score the round"""
        match.apply_engine_state(state)
        self.logger.info(
            f"Match {match.id} round {match.round_number} ended by {cause}: "
            f"{state.status.value}, winner={state.winner.value if state.winner else None}"
        )
        await self.ratings.finalize_result(session, match, state.status, state.winner)

    @staticmethod
    def _check_rematch_preconditions(match: Match) -> Optional[HandlerResult]:
        if not match.status.is_terminal:
            return HandlerResult.failure(HandlerReason.MATCH_NOT_TERMINAL)
        if not match.seats.is_full:
            return HandlerResult.failure(HandlerReason.MISSING_OPPONENT)
        return None

    @staticmethod
    async def _find_by_room_code(session: AsyncSession, room_code: str) -> Optional[Match]:
        result = await session.execute(
            select(Match).where(Match.room_code == room_code)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_match(session: AsyncSession, match_id: int) -> Match:
        match = await session.get(Match, match_id)
        if match is None:
            raise MatchNotFoundError(match_id)
        return match
