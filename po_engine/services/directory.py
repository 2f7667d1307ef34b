from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from po_engine.app.core.config import EngineSettings
from po_engine.app.db.models.models_v1 import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    user_id: str
    display_name: str
    role: str
    is_fallback: bool = False


class ActorDirectory(Protocol):
    def resolve_actor(self, user_id: str) -> Actor | None: ...


class SqlActorDirectory:
    """Active users from the `users` table."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_actor(self, user_id: str) -> Actor | None:
        try:
            pk = int(user_id)
        except (TypeError, ValueError):
            return None
        user = self.db.get(User, pk)
        if user is None or not user.active:
            return None
        return Actor(user_id=str(user.id), display_name=user.name, role=user.role.value)


def system_actor(settings: EngineSettings) -> Actor:
    return Actor(
        user_id=settings.system_actor_id,
        display_name=settings.system_actor_name,
        role=settings.system_actor_role,
        is_fallback=True,
    )


def resolve_or_fallback(directory: ActorDirectory, user_id: str | None, settings: EngineSettings) -> Actor:
    actor = directory.resolve_actor(user_id) if user_id else None
    if actor is not None:
        return actor
    logger.warning("Actor %r could not be resolved, acting as %s", user_id, settings.system_actor_id)
    return system_actor(settings)
