# insights_engine/scoring/result.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Optional, TypeVar, Union

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ScoreResult:
    score: Optional[float] = None
    level: Optional[str] = None
    scores: Dict[str, float] = field(default_factory=dict)
    factors: Dict[str, Any] = field(default_factory=dict)
    needs_attention: bool = False


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: Exception

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[ScoreResult], Err]


def safe_score(fn: Callable[..., ScoreResult], *args, **kwargs) -> Result:
    """Run a raw scoring function and fold any exception into an Err."""
    try:
        return Ok(fn(*args, **kwargs))
    except Exception as e:
        return Err(e)
