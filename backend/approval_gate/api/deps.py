"""Reusable FastAPI dependencies for sessions and caller identity."""

from __future__ import annotations

from fastapi import Depends

from approval_gate.core.auth import Actor, get_actor
from approval_gate.core.errors import Forbidden
from approval_gate.db.session import get_session

SESSION_DEP = Depends(get_session)
ACTOR_DEP = Depends(get_actor)


def require_admin(actor: Actor = ACTOR_DEP) -> Actor:
    """Require a caller whose profile is one of the configured admin profiles."""
    if not actor.is_admin:
        raise Forbidden("Administrator profile required")
    return actor


ADMIN_DEP = Depends(require_admin)
