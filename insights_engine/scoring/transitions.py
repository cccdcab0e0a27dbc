# insights_engine/scoring/transitions.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple, Union

from insights_engine.scoring.result import ScoreResult

State = Union[str, Enum, None]


def _key(state: State) -> Optional[str]:
    if state is None:
        return None
    return state.value if isinstance(state, Enum) else str(state)


class OrdinalScale:
    """States ordered best → worst."""

    def __init__(self, states: Iterable[State]):
        self.states: Tuple[str, ...] = tuple(_key(s) for s in states)
        self._rank = {s: i for i, s in enumerate(self.states)}

    def rank(self, state: State) -> Optional[int]:
        return self._rank.get(_key(state))

    def __contains__(self, state: State) -> bool:
        return _key(state) in self._rank

    def is_worse(self, new: State, old: State) -> bool:
        new_rank, old_rank = self.rank(new), self.rank(old)
        if new_rank is None or old_rank is None:
            return False
        return new_rank > old_rank


@dataclass(frozen=True)
class Transition:
    is_transition: bool
    is_concerning: bool
    previous: Optional[str]
    current: Optional[str]


def detect(previous: State, result: Union[ScoreResult, State], scale: OrdinalScale) -> Transition:
    """Classify previous → new state. A first assessment (previous None) is never concerning."""
    current = result.level if isinstance(result, ScoreResult) else result
    prev_key, cur_key = _key(previous), _key(current)
    changed = cur_key != prev_key
    return Transition(
        is_transition=changed,
        is_concerning=changed and prev_key is not None and scale.is_worse(cur_key, prev_key),
        previous=prev_key,
        current=cur_key,
    )
