# insights_engine/store.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Type

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from insights_engine.models import Branch

log = logging.getLogger(__name__)


class EntityStore:
    """
    Narrow persistence seam for the batch runner.

    Reads are branch-scoped keyset pages ordered by primary key; the only write
    is `update_score_fields`, which commits per entity so a crash mid-run keeps
    the progress made so far.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        return self.db.get(Branch, branch_id)

    def iter_chunks(
        self,
        model: Type[Any],
        branch_id: str,
        chunk_size: int = 50,
        filters: Optional[List[Any]] = None,
    ) -> Iterator[List[Any]]:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

        last_id = None
        while True:
            stmt = select(model).where(model.branch_id == branch_id)
            for f in filters or []:
                stmt = stmt.where(f)
            if last_id is not None:
                stmt = stmt.where(model.id > last_id)
            stmt = stmt.order_by(model.id).limit(chunk_size)

            chunk = list(self.db.execute(stmt).scalars().all())
            if not chunk:
                return
            last_id = chunk[-1].id
            yield chunk
            if len(chunk) < chunk_size:
                return

    def update_score_fields(self, model: Type[Any], entity_id: Any, fields: Dict[str, Any]) -> None:
        """
        Write the scorer-owned columns for one entity and commit.
        Rolls back and re-raises on any failure.
        """
        if not fields:
            return
        unknown = [k for k in fields if not hasattr(model, k)]
        if unknown:
            raise ValueError(f"{model.__name__} has no column(s): {', '.join(unknown)}")

        try:
            self.db.execute(
                update(model)
                .where(model.id == entity_id)
                .values(**fields)
                .execution_options(synchronize_session="fetch")
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
