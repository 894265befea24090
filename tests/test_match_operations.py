"""
Tests for the match handlers: room lifecycle, moves, timeout polls,
resignation, rematches and optimistic concurrency.
"""

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from gridduel.database.models import Match, Move, Rating, RatingEvent
from gridduel.engine import GameConfig, MatchStatus, Symbol
from gridduel.operations.match_operations import MatchOperations, normalize_room_code
from gridduel.utils.exceptions import (
    GameConfigError, MatchConcurrencyError, MatchNotFoundError, RoomCodeError,
    RoomFullError
)

from conftest import (
    ALICE, BOB, CAROL, CLASSIC, Gate, GatedMatchOperations, GatedRatingOperations,
    PausedMatchOperations, open_match, play_moves
)

X_WINS_TOP_ROW = [0, 4, 1, 8, 2]
DRAW_SEQUENCE = [0, 1, 2, 4, 3, 5, 7, 6, 8]


async def count_rows(database, model, *criteria):
    async with database.get_session() as session:
        query = select(func.count()).select_from(model)
        for criterion in criteria:
            query = query.where(criterion)
        return (await session.execute(query)).scalar_one()


class TestRoomLifecycle:

    async def test_create_room_seats_host_as_x(self, match_ops, clock):
        match = await match_ops.create_room(ALICE, GameConfig(5, 4, 20, preset_id="arena-5"), "duel-1")
        assert match.room_code == "DUEL-1"
        assert match.status is MatchStatus.WAITING
        assert match.player_x_id == ALICE
        assert match.player_o_id is None
        assert match.board == "." * 25
        assert match.preset_id == "arena-5"
        assert match.version == 1

    async def test_invalid_config_writes_nothing(self, database, match_ops):
        with pytest.raises(GameConfigError) as exc_info:
            await match_ops.create_room(ALICE, GameConfig(size=2, win_length=3, turn_time_sec=30), "ROOM-1")
        assert exc_info.value.code == "INVALID_SIZE"
        assert await count_rows(database, Match) == 0

    @pytest.mark.parametrize("room_code", ["", "AB", "ROOM 1", "A" * 21, "room_1"])
    async def test_malformed_room_codes(self, match_ops, room_code):
        with pytest.raises(RoomCodeError):
            await match_ops.create_room(ALICE, CLASSIC, room_code)

    async def test_duplicate_room_code(self, match_ops):
        await match_ops.create_room(ALICE, CLASSIC, "ROOM-1")
        with pytest.raises(RoomCodeError):
            await match_ops.create_room(CAROL, CLASSIC, " room-1 ")

    def test_normalize_room_code(self):
        assert normalize_room_code("  abc-9 ") == "ABC-9"
        assert normalize_room_code(None) is None

    async def test_join_activates_the_match(self, match_ops, clock):
        created = await match_ops.create_room(ALICE, CLASSIC, "ROOM-1")
        clock.advance(5)

        result = await match_ops.join_room("room-1", BOB)
        assert result.ok
        assert result.data == {"match_id": created.id, "joined_as": "O"}

        match = await match_ops.get_match_by_room_code("ROOM-1")
        assert match.status is MatchStatus.ACTIVE
        assert match.player_o_id == BOB
        assert match.next_player is Symbol.X
        assert match.turn_deadline_at == clock() + 30_000

    async def test_rejoin_returns_existing_seat(self, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        before = await match_ops.get_match_by_id(match_id)

        result = await match_ops.join_room("ROOM-1", ALICE)
        assert result.data["joined_as"] == "X"

        after = await match_ops.get_match_by_id(match_id)
        assert after.version == before.version

    async def test_full_room_and_unknown_room(self, match_ops):
        await open_match(match_ops, "ROOM-1")
        with pytest.raises(RoomFullError):
            await match_ops.join_room("ROOM-1", CAROL)
        with pytest.raises(MatchNotFoundError):
            await match_ops.join_room("NOPE", CAROL)

    async def test_lookups(self, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        assert (await match_ops.get_match_by_room_code("room-1")).id == match_id
        assert await match_ops.get_match_by_room_code("??") is None
        assert await match_ops.get_match_by_room_code("") is None
        assert await match_ops.get_match_by_id(match_id + 100) is None


class TestMoves:

    async def test_full_round_through_the_handlers(self, database, match_ops, rating_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        result = await play_moves(match_ops, match_id, X_WINS_TOP_ROW)

        assert result.ok
        assert result.data == {"event": "won", "status": "won", "winner": "X", "winning_line": [0, 1, 2]}

        match = await match_ops.get_match_by_id(match_id)
        assert match.status is MatchStatus.WON
        assert match.winner is Symbol.X
        assert match.winning_cells == [0, 1, 2]
        assert match.last_move_index == 2
        assert match.board == "XXX.O...O"

        async with database.get_session() as session:
            moves = (await session.execute(
                select(Move).where(Move.match_id == match_id).order_by(Move.turn)
            )).scalars().all()
        assert [move.cell_index for move in moves] == X_WINS_TOP_ROW
        assert [move.turn for move in moves] == [1, 2, 3, 4, 5]
        assert [move.symbol for move in moves] == [Symbol.X, Symbol.O] * 2 + [Symbol.X]
        assert moves[1].player_id == BOB

        assert (await rating_ops.get_player_rating(ALICE)).elo == 1216

    async def test_move_after_round_is_over(self, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        await play_moves(match_ops, match_id, X_WINS_TOP_ROW)

        result = await match_ops.make_move(match_id, 5, BOB)
        assert not result.ok
        assert result.reason == "MATCH_NOT_ACTIVE"

    async def test_engine_rejections_are_reported(self, database, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")

        result = await match_ops.make_move(match_id, 0, BOB)
        assert result.reason == "NOT_YOUR_TURN"

        await match_ops.make_move(match_id, 4, ALICE)
        result = await match_ops.make_move(match_id, 4, BOB)
        assert result.reason == "CELL_OCCUPIED"
        assert result.data["status"] == "active"

        result = await match_ops.make_move(match_id, 9, BOB)
        assert result.reason == "OUT_OF_BOUNDS"

        assert await count_rows(database, Move) == 1

    async def test_outsider_cannot_move(self, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        result = await match_ops.make_move(match_id, 0, CAROL)
        assert result.reason == "PLAYER_NOT_JOINED"

    async def test_waiting_room_rejects_moves(self, match_ops):
        match = await match_ops.create_room(ALICE, CLASSIC, "ROOM-1")

        result = await match_ops.make_move(match.id, 0, ALICE)
        assert result.reason == "MATCH_NOT_ACTIVE"
        assert result.data["status"] == "waiting"

        result = await match_ops.make_move(match.id, 0, BOB)
        assert result.reason == "PLAYER_NOT_JOINED"

    async def test_unknown_match(self, match_ops):
        with pytest.raises(MatchNotFoundError):
            await match_ops.make_move(12345, 0, ALICE)

    async def test_late_move_times_out_the_mover(self, database, match_ops, rating_ops, clock):
        match_id = await open_match(match_ops, "ROOM-1")
        clock.advance(31)

        result = await match_ops.make_move(match_id, 0, ALICE)
        assert not result.ok
        assert result.reason == "TURN_EXPIRED"
        assert result.data["status"] == "timeout"

        match = await match_ops.get_match_by_id(match_id)
        assert match.status is MatchStatus.TIMEOUT
        assert match.winner is Symbol.O
        assert match.board == "." * 9
        assert (await rating_ops.get_player_rating(BOB)).elo == 1216

        tick = await match_ops.tick_timeout(match_id)
        assert tick.reason == "MATCH_NOT_ACTIVE"
        assert await count_rows(database, RatingEvent) == 2
        assert await count_rows(database, Move) == 0

    async def test_move_on_the_deadline_is_accepted(self, match_ops, clock):
        match_id = await open_match(match_ops, "ROOM-1")
        clock.advance(30)
        result = await match_ops.make_move(match_id, 0, ALICE)
        assert result.ok
        assert result.data["event"] == "moved"

        match = await match_ops.get_match_by_id(match_id)
        assert match.turn_deadline_at == clock() + 30_000
        assert match.next_player is Symbol.O


class TestTimeoutPoll:

    async def test_tick_before_and_after_deadline(self, database, match_ops, rating_ops, clock):
        match_id = await open_match(match_ops, "ROOM-1")

        result = await match_ops.tick_timeout(match_id)
        assert result.reason == "TURN_STILL_ACTIVE"
        assert result.data["remaining_ms"] == 30_000

        clock.advance(30)
        result = await match_ops.tick_timeout(match_id)
        assert result.reason == "TURN_STILL_ACTIVE"
        assert result.data["remaining_ms"] == 0

        clock.advance(1)
        result = await match_ops.tick_timeout(match_id)
        assert result.ok
        assert result.data == {"status": "timeout", "winner": "O"}

        assert (await rating_ops.get_player_rating(BOB)).elo == 1216
        assert (await rating_ops.get_player_rating(ALICE)).elo == 1184

    async def test_redundant_ticks_score_once(self, database, match_ops, clock):
        match_id = await open_match(match_ops, "ROOM-1")
        await match_ops.make_move(match_id, 4, ALICE)
        clock.advance(45)

        first = await match_ops.tick_timeout(match_id)
        assert first.data["winner"] == "X"
        for _ in range(3):
            again = await match_ops.tick_timeout(match_id)
            assert again.reason == "MATCH_NOT_ACTIVE"

        assert await count_rows(database, RatingEvent) == 2

    async def test_tick_on_waiting_room(self, match_ops):
        match = await match_ops.create_room(ALICE, CLASSIC, "ROOM-1")
        result = await match_ops.tick_timeout(match.id)
        assert result.reason == "MATCH_NOT_ACTIVE"


class TestResign:

    async def test_resign_awards_the_opponent(self, match_ops, rating_ops):
        match_id = await open_match(match_ops, "ROOM-1")

        # O may resign while X is to move
        result = await match_ops.resign(match_id, BOB)
        assert result.ok
        assert result.data == {"winner": "X"}

        match = await match_ops.get_match_by_id(match_id)
        assert match.status is MatchStatus.RESIGNED
        assert (await rating_ops.get_player_rating(ALICE)).elo == 1216

        again = await match_ops.resign(match_id, ALICE)
        assert again.reason == "MATCH_NOT_ACTIVE"

    async def test_outsider_cannot_resign(self, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        result = await match_ops.resign(match_id, CAROL)
        assert result.reason == "PLAYER_NOT_JOINED"


class TestRematch:

    async def test_rematch_flow(self, database, match_ops, rating_ops, clock):
        match_id = await open_match(match_ops, "ROOM-1")

        early = await match_ops.request_rematch(match_id, ALICE)
        assert early.reason == "MATCH_NOT_TERMINAL"

        await play_moves(match_ops, match_id, X_WINS_TOP_ROW)

        assert (await match_ops.request_rematch(match_id, CAROL)).reason == "PLAYER_NOT_JOINED"
        assert (await match_ops.accept_rematch(match_id, BOB)).reason == "REMATCH_NOT_REQUESTED"

        requested = await match_ops.request_rematch(match_id, ALICE)
        assert requested.ok
        assert requested.data == {"requested_by": "X"}

        duplicate = await match_ops.request_rematch(match_id, BOB)
        assert duplicate.reason == "REMATCH_ALREADY_REQUESTED"
        assert duplicate.data == {"requested_by": "X"}

        assert (await match_ops.accept_rematch(match_id, ALICE)).reason == "CANNOT_ACCEPT_OWN_REQUEST"
        assert (await match_ops.accept_rematch(match_id, CAROL)).reason == "PLAYER_NOT_JOINED"

        clock.advance(10)
        accepted = await match_ops.accept_rematch(match_id, BOB)
        assert accepted.ok
        assert accepted.data == {"round_number": 2}

        match = await match_ops.get_match_by_id(match_id)
        assert match.status is MatchStatus.ACTIVE
        assert match.round_number == 2
        assert match.turn_number == 1
        assert match.board == "." * 9
        assert match.winner is None and match.winning_line is None
        assert match.last_move_index is None
        assert match.rematch_requested_by is None
        assert match.turn_deadline_at == clock() + 30_000
        assert (match.player_x_id, match.player_o_id) == (ALICE, BOB)

        # Nothing is scored when the new round opens
        assert await count_rows(database, RatingEvent) == 2

        await play_moves(match_ops, match_id, DRAW_SEQUENCE)
        assert await count_rows(database, RatingEvent) == 4
        assert await count_rows(database, Move, Move.round_number == 2) == 9

        round_two = await rating_ops.get_round_rating_events(match_id, 2, player_id=BOB)
        assert len(round_two.events) == 2
        assert round_two.my_delta is not None

        record = await rating_ops.get_head_to_head(ALICE, BOB)
        assert record.total_games == 2
        assert (record.player_a_wins, record.draws) == (1, 1)

    async def test_rematch_after_timeout(self, match_ops, clock):
        match_id = await open_match(match_ops, "ROOM-1")
        clock.advance(60)
        await match_ops.tick_timeout(match_id)

        assert (await match_ops.request_rematch(match_id, BOB)).ok
        assert (await match_ops.accept_rematch(match_id, ALICE)).ok

    async def test_rematch_on_waiting_room(self, match_ops):
        match = await match_ops.create_room(ALICE, CLASSIC, "ROOM-1")
        result = await match_ops.request_rematch(match.id, ALICE)
        assert result.reason == "MATCH_NOT_TERMINAL"

    async def test_rematch_needs_both_seats(self, database, match_ops):
        match = await match_ops.create_room(ALICE, CLASSIC, "ROOM-1")
        async with database.transaction() as session:
            stored = await session.get(Match, match.id)
            stored.status = MatchStatus.DRAW

        result = await match_ops.request_rematch(match.id, ALICE)
        assert result.reason == "MISSING_OPPONENT"


class TestConcurrency:

    async def test_stale_write_is_rejected(self, database, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")

        first = database.async_session()
        second = database.async_session()
        try:
            mine = await first.get(Match, match_id)
            theirs = await second.get(Match, match_id)

            theirs.last_move_index = 4
            await second.commit()

            mine.last_move_index = 5
            with pytest.raises(StaleDataError):
                await first.commit()
        finally:
            await first.close()
            await second.close()

        match = await match_ops.get_match_by_id(match_id)
        assert match.last_move_index == 4

    async def test_version_advances_on_every_transition(self, match_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        before = (await match_ops.get_match_by_id(match_id)).version
        await match_ops.make_move(match_id, 0, ALICE)
        after = (await match_ops.get_match_by_id(match_id)).version
        assert after == before + 1

    async def test_conflicts_are_retried_with_a_fresh_session(self, match_ops):
        sessions = []

        async def flaky(session):
            sessions.append(session)
            if len(sessions) < 3:
                raise StaleDataError("lost the race")
            return "done"

        assert await match_ops.run_in_transaction("flaky", flaky, max_retries=3) == "done"
        assert len(sessions) == 3
        assert len(set(map(id, sessions))) == 3

    async def test_retries_give_up(self, match_ops):
        calls = []

        async def always_conflicts(session):
            calls.append(session)
            raise IntegrityError("INSERT INTO rating_events", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(MatchConcurrencyError) as exc_info:
            await match_ops.run_in_transaction("finalize", always_conflicts, max_retries=2)
        assert len(calls) == 2
        assert isinstance(exc_info.value.__cause__, IntegrityError)

    async def test_other_errors_are_not_retried(self, match_ops):
        calls = []

        async def broken(session):
            calls.append(session)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await match_ops.run_in_transaction("broken", broken)
        assert len(calls) == 1


class TestRacingHandlers:
    """Handlers that read the same rows before either commits."""

    async def test_move_cannot_land_after_a_committed_timeout(self, database, match_ops, rating_ops, clock):
        match_id = await open_match(match_ops, "ROOM-1")
        deadline = (await match_ops.get_match_by_id(match_id)).turn_deadline_at

        # The mover's clock still reads the deadline, so the engine would accept the move
        mover = PausedMatchOperations(database, rating_operations=rating_ops, clock=lambda: deadline)
        move_task = asyncio.create_task(mover.make_move(match_id, 4, ALICE))
        await mover.loaded.wait()

        clock.advance(31)
        tick = await match_ops.tick_timeout(match_id)
        assert tick.ok
        assert tick.data["winner"] == "O"

        mover.release.set()
        move = await move_task
        assert not move.ok
        assert move.reason == "MATCH_NOT_ACTIVE"

        match = await match_ops.get_match_by_id(match_id)
        assert match.status is MatchStatus.TIMEOUT
        assert match.board == "." * 9
        assert await count_rows(database, Move) == 0
        assert await count_rows(database, RatingEvent) == 2

    async def test_winning_move_races_timeout_poll(self, database, match_ops, rating_ops):
        match_id = await open_match(match_ops, "ROOM-1")
        await play_moves(match_ops, match_id, [0, 4, 1, 8])
        deadline = (await match_ops.get_match_by_id(match_id)).turn_deadline_at

        gate = Gate(parties=2)
        mover = GatedMatchOperations(database, gate, rating_operations=rating_ops, clock=lambda: deadline)
        poller = GatedMatchOperations(database, gate, rating_operations=rating_ops, clock=lambda: deadline + 1)

        move, tick = await asyncio.gather(
            mover.make_move(match_id, 2, ALICE),
            poller.tick_timeout(match_id),
        )

        # Exactly one transition closes the round; the other re-reads and finds it over
        assert sorted([move.ok, tick.ok]) == [False, True]
        loser = tick if move.ok else move
        assert loser.reason == "MATCH_NOT_ACTIVE"

        match = await match_ops.get_match_by_id(match_id)
        if move.ok:
            assert match.status is MatchStatus.WON
            assert match.winner is Symbol.X
            assert await count_rows(database, Move) == 5
        else:
            assert match.status is MatchStatus.TIMEOUT
            assert match.winner is Symbol.O
            assert await count_rows(database, Move) == 4
        assert await count_rows(database, RatingEvent) == 2

    async def test_resign_races_timeout_and_scores_once(self, database, clock):
        gate = Gate(parties=2)
        ratings = GatedRatingOperations(database, gate, ALICE)
        first = MatchOperations(database, rating_operations=ratings, clock=clock)
        second = MatchOperations(database, rating_operations=ratings, clock=clock)

        match_id = await open_match(first, "ROOM-1")
        clock.advance(31)

        # Both finalizers pass the "already scored" check before either commits
        resigned, tick = await asyncio.gather(
            first.resign(match_id, ALICE),
            second.tick_timeout(match_id),
        )

        assert sorted([resigned.ok, tick.ok]) == [False, True]
        loser = tick if resigned.ok else resigned
        assert loser.reason == "MATCH_NOT_ACTIVE"

        assert await count_rows(database, RatingEvent) == 2
        bob = await ratings.get_player_rating(BOB)
        alice = await ratings.get_player_rating(ALICE)
        assert (bob.elo, bob.games_played) == (1216, 1)
        assert (alice.elo, alice.games_played) == (1184, 1)

    @pytest.mark.parametrize("seed_rating", [True, False])
    async def test_shared_player_finishing_two_matches_at_once(self, database, clock, seed_rating):
        if seed_rating:
            async with database.transaction() as session:
                session.add(Rating(player_id=ALICE, elo=1200, games_played=0, provisional_until=12))

        ratings = GatedRatingOperations(database, Gate(parties=2), ALICE)
        ops = MatchOperations(database, rating_operations=ratings, clock=clock)

        against_bob = await open_match(ops, "ROOM-1")
        against_carol = await open_match(ops, "ROOM-2", o_player=CAROL)
        await play_moves(ops, against_bob, [0, 4, 1, 8])
        await play_moves(ops, against_carol, [0, 4, 1, 8], o_player=CAROL)

        results = await asyncio.gather(
            ops.make_move(against_bob, 2, ALICE),
            ops.make_move(against_carol, 2, ALICE),
        )
        assert all(result.ok and result.data["event"] == "won" for result in results)

        # The second round scored against the first round's result, not the stale read
        alice = await ratings.get_player_rating(ALICE)
        assert alice.games_played == 2
        assert alice.elo == 1231

        async with database.get_session() as session:
            events = (await session.execute(
                select(RatingEvent).where(RatingEvent.player_id == ALICE)
            )).scalars().all()
        assert sorted(event.before_elo for event in events) == [1200, 1216]
        assert await count_rows(database, RatingEvent) == 4
