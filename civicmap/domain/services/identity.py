"""
Identity provider boundary implementations.
"""
from typing import Callable, List, Optional
import logging

from ..models import Identity
from .interfaces import IIdentityProvider
from .security import identity_from_token

logger = logging.getLogger(__name__)

AuthCallback = Callable[[Optional[Identity]], None]


class InMemoryIdentityProvider(IIdentityProvider):
    """
    Identity source driven by explicit sign_in / sign_out calls.

    Used when the host application performs authentication itself (or
    exchanges a token, see from_token) and just needs to tell the sync
    layer who is signed in.
    """

    def __init__(self, user: Optional[Identity] = None):
        self._user = user
        self._callbacks: List[AuthCallback] = []

    @classmethod
    def from_token(cls, token: str) -> "InMemoryIdentityProvider":
        """Start signed in as the token's subject (signed out if the token is invalid)."""
        identity = identity_from_token(token)
        if identity is None:
            logger.warning("Invalid or expired identity token, starting signed out")
        return cls(identity)

    def current_user(self) -> Optional[Identity]:
        return self._user

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def sign_in(self, identity: Identity) -> None:
        self._user = identity
        self._notify()

    def sign_out(self) -> None:
        self._user = None
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._callbacks):
            callback(self._user)
