from dataclasses import dataclass
from typing import Optional

from gridduel.engine.types import GameConfig


@dataclass(frozen=True)
class GamePreset:
    id: str
    label: str
    description: str
    config: GameConfig


GAME_PRESETS = (
    GamePreset(
        id="classic-3",
        label="Classic",
        description="Quick and sharp. No room to hide.",
        config=GameConfig(size=3, win_length=3, turn_time_sec=30, preset_id="classic-3"),
    ),
    GamePreset(
        id="arena-5",
        label="Arena",
        description="More space. More schemes.",
        config=GameConfig(size=5, win_length=4, turn_time_sec=30, preset_id="arena-5"),
    ),
    GamePreset(
        id="marathon-10",
        label="Marathon",
        description="Settle in. This one's a war.",
        config=GameConfig(size=10, win_length=5, turn_time_sec=45, preset_id="marathon-10"),
    ),
)


def get_preset(preset_id: str) -> Optional[GamePreset]:
    for preset in GAME_PRESETS:
        if preset.id == preset_id:
            return preset
    return None
