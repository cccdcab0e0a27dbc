# insights_engine/notifications/recipients.py
from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from insights_engine.config import Settings, settings as default_settings
from insights_engine.models import AlertSetting, BranchUserAccess, User


def roles_for(setting: Optional[AlertSetting], settings: Settings = default_settings) -> List[str]:
    """Configured recipient roles, or the deployment default (admin, pastor)."""
    if setting is not None and setting.recipient_roles:
        return list(setting.recipient_roles)
    return list(settings.default_recipient_roles)


def users_with_roles(db: Session, branch_id: str, roles: Iterable[str]) -> List[User]:
    """Distinct users holding any of `roles` on the branch, in a stable order."""
    roles = list(roles)
    if not roles:
        return []
    stmt = (
        select(User)
        .join(BranchUserAccess, BranchUserAccess.user_id == User.id)
        .where(BranchUserAccess.branch_id == branch_id, BranchUserAccess.role.in_(roles))
        .distinct()
        .order_by(User.id)
    )
    return list(db.execute(stmt).scalars().all())
