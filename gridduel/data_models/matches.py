"""
Match handler data models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class HandlerReason(str, Enum):
    """Handler-level rejection codes, on top of the engine's MoveFailureReason."""
    PLAYER_NOT_JOINED = "PLAYER_NOT_JOINED"
    MATCH_NOT_ACTIVE = "MATCH_NOT_ACTIVE"
    TURN_STILL_ACTIVE = "TURN_STILL_ACTIVE"
    MATCH_NOT_TERMINAL = "MATCH_NOT_TERMINAL"
    MISSING_OPPONENT = "MISSING_OPPONENT"
    REMATCH_ALREADY_REQUESTED = "REMATCH_ALREADY_REQUESTED"
    REMATCH_NOT_REQUESTED = "REMATCH_NOT_REQUESTED"
    CANNOT_ACCEPT_OWN_REQUEST = "CANNOT_ACCEPT_OWN_REQUEST"


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a match handler. `reason` is a stable code when ok is False."""
    ok: bool
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data) -> "HandlerResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, reason, **data) -> "HandlerResult":
        return cls(ok=False, reason=getattr(reason, "value", reason), data=data)
