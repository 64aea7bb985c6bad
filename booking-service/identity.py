import logging
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException

logger = logging.getLogger(__name__)


class Identity:
    """Caller identity as vouched for by the identity provider.

    The service never validates the id token itself; it forwards it to the
    Booking API, which does.
    """

    def __init__(self, uid: Optional[str] = None, token: Optional[str] = None, email: Optional[str] = None):
        self._uid = uid
        self._token = token
        self.email = email
        self._listeners: list[Callable[[Optional[str]], None]] = []

    @property
    def current_user(self) -> Optional[str]:
        return self._uid

    async def get_id_token(self) -> Optional[str]:
        """Return the caller's id token, or None if none can be obtained."""
        return self._token or None

    def on_auth_state_changed(self, listener: Callable[[Optional[str]], None]) -> Callable[[], None]:
        """Register a listener called with the new uid on sign-in/sign-out; returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def sign_in(self, uid: str, token: str):
        self._uid, self._token = uid, token
        self._notify()

    def sign_out(self):
        self._uid, self._token = None, None
        self._notify()

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self._uid)
            except Exception as e:
                logger.error(f"Auth state listener failed: {e}")


async def get_identity(
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> Identity:
    """FastAPI dependency building the caller identity from request headers."""
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(None, 1)[1].strip() or None
    return Identity(uid=x_user_id, token=token, email=x_user_email)


async def require_identity(identity: Identity = Depends(get_identity)) -> Identity:
    """Like ``get_identity``, but answers 401 when the request carries no bearer token."""
    if not await identity.get_id_token():
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity
