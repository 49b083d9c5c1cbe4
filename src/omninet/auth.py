from __future__ import annotations

from enum import Enum
from typing import Any, Final

from fastapi import Request

from .errors import NotAuthenticated


class SystemActor(Enum):
    """Server-side automated actor; allowed to drive any owner-only transition.

    An enum member never compares equal to a ``sub`` claim string.
    """

    SYSTEM = "system"


SYSTEM_ACTOR: Final = SystemActor.SYSTEM

# A signed-in user's ``sub`` or the system actor
Actor = str | SystemActor


def is_system(actor: Actor) -> bool:
    return actor is SYSTEM_ACTOR


def _claims(request: Request) -> dict[str, Any]:
    # Mangum exposes the raw Lambda event on the ASGI scope
    event = request.scope.get("aws.event") or {}
    authorizer = event.get("requestContext", {}).get("authorizer", {}) or {}
    jwt = authorizer.get("jwt") or {}
    return jwt.get("claims") or authorizer.get("claims") or {}


def optional_actor(request: Request) -> str | None:
    sub = _claims(request).get("sub")
    return str(sub) if sub else None


def current_actor(request: Request) -> str:
    actor = optional_actor(request)
    if actor is None:
        raise NotAuthenticated()
    return actor
