"""Access token session that gates long readiness polls on token expiry."""

from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

import jwt


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessSession:
    """The caller's authorization for the duration of a readiness poll.

    Only the ``exp`` claim is read; signature verification belongs to
    whatever issued the token. A revoked or expired session stops any
    poll that was started on its behalf.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.token = token
        self.expires_at = expires_at
        self._clock = clock
        self._revoked = False

    @classmethod
    def from_token(
        cls, token: str, clock: Callable[[], datetime] = _utcnow
    ) -> "AccessSession":
        claims: Mapping = jwt.decode(token, options={"verify_signature": False})
        exp = claims.get("exp")
        expires_at = (
            datetime.fromtimestamp(int(exp), tz=timezone.utc) if exp is not None else None
        )
        return cls(token=token, expires_at=expires_at, clock=clock)

    def revoke(self) -> None:
        self._revoked = True

    @property
    def revoked(self) -> bool:
        return self._revoked

    def is_active(self) -> bool:
        if self._revoked:
            return False
        if self.expires_at is None:
            return True
        return self._clock() < self.expires_at

    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}
