# insights_engine/scoring/batch.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from insights_engine.config import Settings, settings as default_settings
from insights_engine.errors import is_infrastructure_error
from insights_engine.scoring.result import Err
from insights_engine.scoring.scorers import Scorer, ScoringContext
from insights_engine.scoring.transitions import Transition, detect
from insights_engine.store import EntityStore
from insights_engine.utils.common import Clock, utcnow

log = logging.getLogger(__name__)


@dataclass
class BatchStats:
    processed: int = 0
    errors: int = 0
    transitions: int = 0
    concerning: List[Dict[str, Any]] = field(default_factory=list)
    needs_attention: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "transitions": self.transitions,
            "concerning_transitions": len(self.concerning),
            "needs_attention": len(self.needs_attention),
        }


class BatchRunner:
    """
    Pages through a branch's entities, scores each one and persists the
    projection. One bad entity never stops the run; a lost database does.
    """

    def __init__(self, store: EntityStore, settings: Settings = default_settings, clock: Clock = utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock

    def run(self, branch_id: str, scorer: Scorer, chunk_size: Optional[int] = None) -> BatchStats:
        chunk_size = chunk_size or self.settings.DEFAULT_CHUNK_SIZE
        stats = BatchStats()
        ctx = ScoringContext(db=self.store.db, settings=self.settings, branch_id=branch_id, now=self.clock())

        for chunk in self.store.iter_chunks(scorer.model, branch_id, chunk_size, scorer.filters()):
            for entity in chunk:
                self._process_one(entity, scorer, ctx, stats)

        log.info(
            "[%s] branch=%s processed=%d errors=%d transitions=%d concerning=%d",
            scorer.name, branch_id, stats.processed, stats.errors, stats.transitions, len(stats.concerning),
        )
        return stats

    def _process_one(self, entity: Any, scorer: Scorer, ctx: ScoringContext, stats: BatchStats) -> None:
        entity_id = entity.id
        previous = getattr(entity, scorer.state_field) if scorer.state_field else None

        result = scorer.score(entity, ctx)
        if isinstance(result, Err):
            if is_infrastructure_error(result.error):
                raise result.error
            stats.errors += 1
            log.warning("[%s] failed to score %s=%s: %s", scorer.name, scorer.entity_type, entity_id, result.error)
            return
        score = result.value

        transition: Optional[Transition] = None
        if scorer.scale is not None:
            transition = detect(previous, score, scorer.scale)

        try:
            fields = scorer.project(entity, score, transition, ctx.now)
            self.store.update_score_fields(scorer.model, entity_id, fields)
        except Exception as e:
            if is_infrastructure_error(e):
                raise
            stats.errors += 1
            log.warning("[%s] failed to save %s=%s: %s", scorer.name, scorer.entity_type, entity_id, e)
            return

        stats.processed += 1
        record = {
            "entity_type": scorer.entity_type,
            "id": entity_id,
            "name": scorer.display_name(entity),
            "score": score.score,
            "level": score.level,
        }
        if transition is not None and transition.is_transition:
            stats.transitions += 1
            if transition.is_concerning:
                stats.concerning.append({**record, "previous": transition.previous, "current": transition.current})
        if score.needs_attention:
            stats.needs_attention.append(record)
