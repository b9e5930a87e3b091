"""
Current-actor lookup.

Sign-in lives with the external identity provider; by the time a request
reaches this service the gateway has put the signed-in staff member in the
X-Actor-Id / X-Actor-Name headers. Checkout receives an IdentityProvider and
asks it for the actor, so nothing here is global.
"""
from typing import Optional, Protocol

from fastapi import Header

from schemas import Actor

UNKNOWN_STAFF = "Unknown Staff"


class IdentityProvider(Protocol):
    def current_actor(self) -> Optional[Actor]: ...


class StaticIdentity:
    """Identity fixed for the lifetime of one request (or a test)."""

    def __init__(self, actor: Optional[Actor] = None):
        self.actor = actor

    def current_actor(self) -> Optional[Actor]:
        return self.actor


def header_identity(
    x_actor_id: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
) -> IdentityProvider:
    if not x_actor_id:
        return StaticIdentity(None)
    return StaticIdentity(Actor(id=x_actor_id, name=x_actor_name or UNKNOWN_STAFF))
