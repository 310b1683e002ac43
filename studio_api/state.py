"""
Episode status state machine and declared phase policies.
"""

from dataclasses import dataclass, field
from typing import List

from .models import EpisodeStatus, StageKind

S = EpisodeStatus

_RANK = {
    S.NOT_STARTED: 0,
    S.DRAFT: 1,
    S.SCRIPT_READY: 2,
    S.MANIFEST_READY: 3,
    S.PROCESSING: 4,
    S.RENDERING: 5,
    S.COMPLETED: 6,
}

TERMINAL = {S.COMPLETED, S.FAILED}
IN_FLIGHT = {S.DRAFT, S.SCRIPT_READY, S.MANIFEST_READY, S.PROCESSING, S.RENDERING}
RENDER_IN_PROGRESS = {S.PROCESSING, S.RENDERING}
# idle states a fresh production run may restart from
RESTARTABLE = {S.SCRIPT_READY, S.MANIFEST_READY, S.COMPLETED, S.FAILED}


def can_transition(current: EpisodeStatus, new: EpisodeStatus) -> bool:
    """Forward-only moves, failure from in-flight states, and retry re-entry"""
    if new == S.FAILED:
        return current in IN_FLIGHT
    if new == S.NOT_STARTED:
        return current in RESTARTABLE
    if new == S.RENDERING and (current in TERMINAL or current == S.RENDERING):
        return True
    if current in TERMINAL:
        return False
    return _RANK[new] > _RANK[current]


@dataclass
class Phase:
    """One synchronization barrier in an episode production run"""
    name: str
    stages: List[StageKind] = field(default_factory=list)
    parallel: bool = True
    on_failure: str = "substitute"  # 'substitute'|'abort'

    def __post_init__(self):
        if self.on_failure not in ("substitute", "abort"):
            raise ValueError(f"Unknown failure policy: {self.on_failure}")


PRODUCTION_PHASES = [
    Phase("concept", [StageKind.SCRIPT, StageKind.HOOK]),
    Phase("refinement", [StageKind.CULTURAL, StageKind.DIRECTOR]),
    Phase("scenes", [StageKind.SCENE], parallel=False, on_failure="abort"),
]
