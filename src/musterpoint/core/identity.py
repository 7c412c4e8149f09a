"""
Identity provider seam

Operations ask the provider for the current actor instead of taking a
user id, mirroring a signed-in client session.
"""

from typing import Optional, Protocol

from ..models.user import Actor


class IdentityProvider(Protocol):
    def current_actor(self) -> Optional[Actor]:
        ...


class StaticIdentityProvider:
    """Identity provider holding a fixed (switchable) actor"""

    def __init__(self, actor: Optional[Actor] = None):
        self.actor = actor

    def current_actor(self) -> Optional[Actor]:
        return self.actor

    def sign_in(self, actor: Actor) -> None:
        self.actor = actor

    def sign_out(self) -> None:
        self.actor = None
