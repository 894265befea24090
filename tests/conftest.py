import asyncio
import os
import sys

# Keep test runs from writing dated log files into the working tree
os.environ.setdefault('LOG_TO_FILE', 'false')
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from gridduel.database.database import Database
from gridduel.engine import GameConfig
from gridduel.operations.history_operations import HistoryOperations
from gridduel.operations.match_operations import MatchOperations
from gridduel.operations.rating_operations import RatingOperations
from gridduel.utils.elo import RatingSettings

# Lexicographically ordered so head-to-head "low" and "high" are predictable
ALICE = "player-alice"
BOB = "player-bob"
CAROL = "player-carol"

CLASSIC = GameConfig(size=3, win_length=3, turn_time_sec=30)

TEST_SETTINGS = RatingSettings(
    starting_elo=1200,
    k_factor_provisional=32,
    k_factor_standard=24,
    provisional_match_count=12,
)


class FakeClock:
    """Server clock in epoch milliseconds, moved by hand"""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> int:
        self.now_ms += int(seconds * 1000)
        return self.now_ms


class Gate:
    """Holds the first `parties` callers until all of them have arrived; later calls pass straight through"""

    def __init__(self, parties: int = 2):
        self.parties = parties
        self.arrived = 0
        self.opened = asyncio.Event()

    async def arrive(self):
        if self.opened.is_set():
            return
        self.arrived += 1
        if self.arrived >= self.parties:
            self.opened.set()
        await asyncio.wait_for(self.opened.wait(), timeout=5)


class GatedRatingOperations(RatingOperations):
    """Finalizer that pauses right after reading one player's rating"""

    def __init__(self, database, gate: Gate, player_id: str):
        super().__init__(database, settings=TEST_SETTINGS)
        self.gate = gate
        self.player_id = player_id

    async def get_or_create_rating(self, session, player_id):
        rating = await super().get_or_create_rating(session, player_id)
        if player_id == self.player_id:
            await self.gate.arrive()
        return rating


class GatedMatchOperations(MatchOperations):
    """Handlers whose first match read waits at a shared gate"""

    def __init__(self, database, gate: Gate, **kwargs):
        super().__init__(database, **kwargs)
        self.gate = gate

    async def _load_match(self, session, match_id):
        match = await super()._load_match(session, match_id)
        await self.gate.arrive()
        return match


class PausedMatchOperations(MatchOperations):
    """Handlers that stop after their first match read until released"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.loaded = asyncio.Event()
        self.release = asyncio.Event()

    async def _load_match(self, session, match_id):
        match = await super()._load_match(session, match_id)
        if not self.loaded.is_set():
            self.loaded.set()
            await asyncio.wait_for(self.release.wait(), timeout=5)
        return match


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'gridduel_test.db'}")
    await db.initialize()
    for player_id, name in ((ALICE, "Alice"), (BOB, "Bob"), (CAROL, "Carol")):
        await db.create_player(display_name=name, player_id=player_id)
    yield db
    await db.close()


@pytest.fixture
def rating_ops(database):
    return RatingOperations(database, settings=TEST_SETTINGS)


@pytest.fixture
def match_ops(database, rating_ops, clock):
    return MatchOperations(database, rating_operations=rating_ops, clock=clock)


@pytest.fixture
def history_ops(database):
    return HistoryOperations(database)


async def open_match(match_ops, room_code, x_player=ALICE, o_player=BOB, config=CLASSIC):
    """Create a room for x_player and seat o_player; returns the match id"""
    match = await match_ops.create_room(x_player, config, room_code)
    await match_ops.join_room(room_code, o_player)
    return match.id


async def play_moves(match_ops, match_id, moves, x_player=ALICE, o_player=BOB):
    """Play cell indices alternately starting with X; returns the last result"""
    result = None
    for turn, cell in enumerate(moves):
        player = x_player if turn % 2 == 0 else o_player
        result = await match_ops.make_move(match_id, cell, player)
        assert result.ok, f"move {cell} rejected: {result.reason}"
    return result
