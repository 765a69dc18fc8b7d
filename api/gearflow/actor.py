# gearflow/actor.py
"""
Actor context. Authentication happens upstream; the gateway forwards the
authenticated user as ``X-Actor-Id`` / ``X-Actor-Role`` headers.
"""
from __future__ import annotations
from typing import Optional

from fastapi import Header

from gearflow.db_models import Role
from gearflow.errors import UnauthorizedError
from gearflow.services.capabilities import Actor


async def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    """FastAPI dependency resolving the calling actor."""
    if not x_actor_id or not x_actor_role:
        raise UnauthorizedError("Authentication required")
    try:
        return Actor(id=int(x_actor_id), role=Role(x_actor_role.strip().upper()))
    except ValueError:
        raise UnauthorizedError("Invalid actor headers")
