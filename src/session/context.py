"""Current-user identity consumed by the tracker core.

Sign-in itself (anonymous or token based) happens elsewhere; it reports the
outcome here with sign_in()/sign_out(). The core only asks who the current
user is, and treats "nobody" as "no writes permitted".
"""

from __future__ import annotations

import asyncio

import structlog

from src.infra.errors import NotSignedInError

logger = structlog.get_logger()


class SessionContext:
    """Holds the signed-in user's identity, resolved asynchronously."""

    def __init__(self, user_id: str | None = None) -> None:
        self._user_id: str | None = None
        self._ready = asyncio.Event()
        if user_id is not None:
            self.sign_in(user_id)

    def current_user_id(self) -> str | None:
        return self._user_id

    @property
    def is_ready(self) -> bool:
        """True once sign-in has resolved (successfully or not)."""
        return self._ready.is_set()

    async def wait_ready(self) -> str | None:
        """Wait until sign-in resolves, then return the current user id."""
        await self._ready.wait()
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        user_id = user_id.strip()
        if not user_id:
            raise ValueError("user_id must be a non-empty string")
        self._user_id = user_id
        self._ready.set()
        logger.info("session_signed_in", user_id=user_id)

    def mark_resolved(self) -> None:
        """Sign-in finished without an identity (e.g. it failed)."""
        self._ready.set()

    def sign_out(self) -> None:
        if self._user_id is not None:
            logger.info("session_signed_out", user_id=self._user_id)
        self._user_id = None

    def require_user(self) -> str:
        """Return the current user id or raise NotSignedInError."""
        if self._user_id is None:
            raise NotSignedInError()
        return self._user_id
